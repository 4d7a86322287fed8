import os
from unittest import mock

import pytest

from errors import NotFound, ValidationError
from media import MediaStore
from recipes import MAX_PAGE, RecipeFilter, RecipeService


def test_create_then_get_returns_sanitized_recipe(recipes, recipe_data):
    created = recipes.create_recipe(recipe_data(title=" <b>Varškės apkepas</b> "))
    fetched = recipes.get_recipe(created["id"])
    assert fetched["title"] == "Varškės apkepas"
    assert fetched["ingredients"] == ["500 g varškės", "2 kiaušiniai", "3 šaukštai cukraus"]
    assert fetched["prep_time"] == 15
    assert fetched["image"] is None
    assert fetched["image_url"] is None


def test_create_rejects_unknown_category_without_writing(recipes, recipe_data, db):
    with pytest.raises(ValidationError) as exc:
        recipes.create_recipe(recipe_data(categories=["Picos"]))
    assert "Nežinoma kategorija: Picos" in exc.value.errors
    assert db["recipe"].count_documents({}) == 0


def test_public_listing_never_returns_drafts(recipes, recipe_data):
    recipes.create_recipe(recipe_data(title="Paskelbtas"))
    draft = recipes.create_recipe(recipe_data(title="Juodraštis", status="draft"))

    page = recipes.list_recipes(RecipeFilter(), public=True)
    assert [r["title"] for r in page.items] == ["Paskelbtas"]

    everything = recipes.list_recipes(RecipeFilter(status="all"), public=False)
    assert len(everything.items) == 2

    with pytest.raises(NotFound):
        recipes.get_recipe(draft["id"], public=True)
    assert recipes.get_recipe(draft["id"])["status"] == "draft"


def test_pagination_is_newest_first_without_overlap(recipes, recipe_data):
    for i in range(20):
        recipes.create_recipe(recipe_data(title=f"Receptas {i:02d}"))

    first = recipes.list_recipes(RecipeFilter(page=1, limit=12))
    second = recipes.list_recipes(RecipeFilter(page=2, limit=12))

    assert len(first.items) == 12
    assert len(second.items) == 8
    assert first.meta["has_more"] is True
    assert second.meta["has_more"] is False
    assert first.meta["total"] == 20

    titles = [r["title"] for r in first.items + second.items]
    assert titles == [f"Receptas {i:02d}" for i in reversed(range(20))]


def test_exactly_full_last_page_still_reports_more(recipes, recipe_data):
    for i in range(12):
        recipes.create_recipe(recipe_data(title=f"Receptas {i:02d}"))

    page = recipes.list_recipes(RecipeFilter(page=1, limit=12))
    assert page.meta["has_more"] is True
    empty = recipes.list_recipes(RecipeFilter(page=2, limit=12))
    assert empty.items == []
    assert empty.meta["has_more"] is False


def test_category_filter_and_popular(recipes, recipe_data):
    recipes.create_recipe(recipe_data(title="Sriuba", categories=["Sriubos"]))
    for i in range(3):
        recipes.create_recipe(recipe_data(title=f"Desertas {i}", categories=["Desertai"]))

    soups = recipes.list_recipes(RecipeFilter(category="Sriubos"))
    assert [r["title"] for r in soups.items] == ["Sriuba"]

    popular = recipes.list_recipes(RecipeFilter(page=5, limit=2, popular=True))
    assert [r["title"] for r in popular.items] == ["Desertas 2", "Desertas 1"]
    assert popular.meta["has_more"] is False


def test_page_number_is_clamped(recipes, recipe_data):
    recipes.create_recipe(recipe_data())
    page = recipes.list_recipes(RecipeFilter(page=10 ** 19))
    assert page.items == []
    assert page.meta["page"] == MAX_PAGE
    assert recipes.admin_list_recipes(page=10 ** 19).meta["page"] == MAX_PAGE


def test_admin_listing_pages_of_ten(recipes, recipe_data):
    for i in range(11):
        recipes.create_recipe(recipe_data(title=f"Receptas {i:02d}", status="draft" if i % 2 else "published"))

    page = recipes.admin_list_recipes(page=2)
    assert len(page.items) == 1
    assert page.meta == {"pages": 2, "total": 11, "page": 2}
    assert recipes.admin_list_recipes(status="draft").meta["total"] == 5


def test_update_merges_partial_fields(recipes, recipe_data):
    created = recipes.create_recipe(recipe_data())
    updated = recipes.update_recipe(created["id"], {"title": "Naujas pavadinimas", "servings": "4"})
    assert updated["title"] == "Naujas pavadinimas"
    assert updated["servings"] == 4
    assert updated["ingredients"] == created["ingredients"]


def test_update_replaces_image_after_persisting(recipes, recipe_data, png, media):
    created = recipes.create_recipe(recipe_data(), png("senas.png"))
    old_path = media.resolve(*created["image"].split("/"))
    assert os.path.exists(old_path)

    updated = recipes.update_recipe(created["id"], {}, png("naujas.png"))
    assert updated["image"] != created["image"]
    assert not os.path.exists(old_path)
    assert os.path.exists(media.resolve(*updated["image"].split("/")))


def test_failed_write_removes_new_blob(recipes, recipe_data, png, media, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr("recipes.create_document", boom)
    with pytest.raises(RuntimeError):
        recipes.create_recipe(recipe_data(), png())
    assert os.listdir(os.path.join(media.root, "recipes")) == []


def test_missing_recipe_is_not_found(recipes):
    with pytest.raises(NotFound):
        recipes.get_recipe("000000000000000000000000")
    with pytest.raises(NotFound):
        recipes.get_recipe("r1")
    with pytest.raises(NotFound):
        recipes.update_recipe("r1", {"title": "Niekas"})


def test_delete_with_image_removes_blob_and_comments(db, recipe_data):
    media = mock.create_autospec(MediaStore, instance=True)
    media.url_for.return_value = None
    service = RecipeService(db, media)
    recipe_id = str(db["recipe"].insert_one(dict(recipe_data(), image="recipes/1-abcdef12.png")).inserted_id)
    db["comment"].insert_one({"recipe_id": recipe_id, "content": "Skanu!", "status": "approved"})

    service.delete_recipe(recipe_id)

    media.delete.assert_called_once_with("recipes/1-abcdef12.png")
    assert db["recipe"].count_documents({}) == 0
    assert db["comment"].count_documents({}) == 0


def test_delete_without_image_makes_no_media_call(db, recipe_data):
    media = mock.create_autospec(MediaStore, instance=True)
    media.url_for.return_value = None
    service = RecipeService(db, media)
    created = service.create_recipe(recipe_data())

    service.delete_recipe(created["id"])

    media.delete.assert_not_called()
    with pytest.raises(NotFound):
        service.get_recipe(created["id"])


def test_category_counts_follow_mutations(recipes, recipe_data):
    soup = recipes.create_recipe(recipe_data(title="Sriuba", categories=["Sriubos", "Daržovės"]))
    recipes.create_recipe(recipe_data(title="Apkepas", categories=["Daržovės"], status="draft"))

    assert recipes.list_categories() == [{"name": "Daržovės", "count": 2}, {"name": "Sriubos", "count": 1}]

    recipes.update_recipe(soup["id"], {"categories": ["Bulvės"]})
    assert recipes.list_categories() == [{"name": "Bulvės", "count": 1}, {"name": "Daržovės", "count": 1}]

    recipes.delete_recipe(soup["id"])
    assert recipes.list_categories() == [{"name": "Daržovės", "count": 1}]


def test_refresh_rebuilds_a_stale_view(recipes, recipe_data, db):
    recipes.create_recipe(recipe_data(categories=["Mėsa"]))
    db["category"].insert_one({"name": "Žuvis ir jūros gėrybės", "count": 7})
    assert recipes.refresh_categories() == [{"name": "Mėsa", "count": 1}]
    assert recipes.list_categories() == [{"name": "Mėsa", "count": 1}]


def test_dashboard_stats(recipes, recipe_data, db):
    first = recipes.create_recipe(recipe_data(title="Pirmas"))
    recipes.create_recipe(recipe_data(title="Antras", status="draft"))
    recipes.add_comment(first["id"], {"author": "Jonas", "content": "x" * 80})
    db["subscriber"].insert_one({"email": "ona@gmail.com", "active": True})

    stats = recipes.dashboard_stats()
    assert stats["recipes"] == {"total": 2, "published": 1, "draft": 1}
    assert stats["comments"]["pending"] == 1
    assert stats["subscribers"]["active"] == 1
    assert [r["title"] for r in stats["recent_recipes"]] == ["Antras", "Pirmas"]
    assert stats["recent_comments"][0]["content"] == "x" * 50 + "..."
    assert stats["recent_comments"][0]["recipe_title"] == "Pirmas"
