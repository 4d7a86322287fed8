import pytest

from errors import NotFound, ValidationError


@pytest.fixture
def recipe(recipes, recipe_data):
    return recipes.create_recipe(recipe_data())


def test_new_comment_is_pending_and_hidden(recipes, recipe):
    comment = recipes.add_comment(recipe["id"], {"author": "Jonas", "email": "jonas@gmail.com", "content": "Skanu!"})
    assert comment["status"] == "pending"
    assert "email" not in comment
    assert recipes.list_comments(recipe["id"]) == []

    pending = recipes.list_comments(recipe["id"], include_pending=True)
    assert pending[0]["email"] == "jonas@gmail.com"


def test_approved_comments_are_public_newest_first(recipes, recipe):
    first = recipes.add_comment(recipe["id"], {"content": "Pirmas"})
    second = recipes.add_comment(recipe["id"], {"content": "Antras"})
    for c in (first, second):
        recipes.approve_comment(recipe["id"], c["id"])

    public = recipes.list_comments(recipe["id"])
    assert [c["content"] for c in public] == ["Antras", "Pirmas"]
    assert public[0]["author"] == "Anonimas"


def test_comment_on_missing_recipe_writes_nothing(recipes, db):
    with pytest.raises(NotFound):
        recipes.add_comment("000000000000000000000000", {"author": "Jonas", "content": "Skanu!"})
    assert db["comment"].count_documents({}) == 0


def test_invalid_comment(recipes, recipe, db):
    with pytest.raises(ValidationError):
        recipes.add_comment(recipe["id"], {"author": "Jonas", "content": ""})
    assert db["comment"].count_documents({}) == 0


def test_moderation_checks_the_recipe(recipes, recipe, recipe_data):
    other = recipes.create_recipe(recipe_data(title="Kitas receptas"))
    comment = recipes.add_comment(recipe["id"], {"content": "Skanu!"})

    with pytest.raises(NotFound):
        recipes.approve_comment(other["id"], comment["id"])
    with pytest.raises(NotFound):
        recipes.delete_comment(other["id"], comment["id"])

    recipes.delete_comment(recipe["id"], comment["id"])
    with pytest.raises(NotFound):
        recipes.delete_comment(recipe["id"], comment["id"])


def test_admin_listing_carries_recipe_title(recipes, recipe):
    comment = recipes.add_comment(recipe["id"], {"content": "Skanu!"})
    recipes.add_comment(recipe["id"], {"content": "Labai skanu!"})
    recipes.approve_comment(recipe["id"], comment["id"])

    pending = recipes.admin_list_comments("pending")
    assert [c["content"] for c in pending] == ["Labai skanu!"]
    assert pending[0]["recipe_title"] == "Varškės apkepas"
    assert len(recipes.admin_list_comments()) == 2


def test_recipe_page_degrades_when_comments_fail(recipes, recipe, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("comments unavailable")

    monkeypatch.setattr(recipes, "_comments_for", boom)
    page = recipes.get_recipe_page(recipe["id"])
    assert page["recipe"]["id"] == recipe["id"]
    assert page["comments"] == []


def test_drafts_take_no_public_comments(recipes, recipe_data, db):
    draft = recipes.create_recipe(recipe_data(status="draft"))
    with pytest.raises(NotFound):
        recipes.add_comment(draft["id"], {"author": "Jonas", "content": "Skanu!"})
    with pytest.raises(NotFound):
        recipes.list_comments(draft["id"])
    assert db["comment"].count_documents({}) == 0

    assert recipes.list_comments(draft["id"], include_pending=True, public=False) == []
