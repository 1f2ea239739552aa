"""
Tests for the per-entity-type field registry and model schema declarations.
"""

from __future__ import annotations

import pytest

from field_encryption import FieldRegistry, Include, RelationField, StorageError


def test_mark_encrypted_is_idempotent():
    registry = FieldRegistry()
    registry.mark_encrypted("email")
    registry.mark_encrypted("phone")
    registry.mark_encrypted("email")
    assert registry.encrypted_fields() == ["email", "phone"]
    assert registry.is_encrypted("email")
    assert not registry.is_encrypted("name")
    assert registry.has_encrypted_fields()


def test_encrypted_fields_returns_copy():
    registry = FieldRegistry()
    registry.mark_encrypted("email")
    registry.encrypted_fields().append("hacked")
    assert registry.encrypted_fields() == ["email"]


def test_empty_registry():
    registry = FieldRegistry()
    assert not registry.has_encrypted_fields()
    assert registry.relation_fields() == []
    assert not registry.has_relation_fields()


def test_model_registry(users, posts):
    assert users.get_encrypted() == ["email", "phone"]
    assert users.is_encrypted("email")
    assert not users.is_encrypted("name")
    assert posts.get_encrypted() == ["body"]


def test_relation_fields(users, posts):
    assert users.get_relation_fields() == [RelationField(model="Post", field="posts")]
    assert posts.get_relation_fields() == [RelationField(model="User", field="author")]
    assert users.has_relation_fields()


def test_relation_fields_skip_unaliased(store):
    tags = store.define("Tag")
    tags.belongs_to("Category")
    assert tags.get_relation_fields() == []
    assert "category_id" in tags.fields


def test_relation_fields_recomputed_after_new_relation(users, store):
    store.define("Comment").belongs_to("User", alias="user")
    assert len(users.get_relation_fields()) == 1
    users.has_many("Comment", alias="comments")
    assert RelationField(model="Comment", field="comments") in users.get_relation_fields()


def test_resolve_include(users, posts):
    relation, target = users.resolve_include(Include("Post", alias="posts"))
    assert target is posts
    assert relation.many
    relation, target = posts.resolve_include(Include(users))
    assert target is users
    assert not relation.many
    with pytest.raises(StorageError):
        users.resolve_include(Include("Post", alias="drafts"))


def test_field_defaults(users):
    users.field("status", default="new")
    entity = users.build({"name": "a"})
    assert entity.get("status") == "new"
    assert entity.changed("status")


def test_unknown_hook_event(users):
    with pytest.raises(ValueError):
        users.add_hook("before_everything", lambda *a: None)


def test_duplicate_model(store, users):
    with pytest.raises(StorageError):
        store.define("User")
    with pytest.raises(StorageError):
        store.model("Missing")
