import json

from validation import (
    DEFAULT_AUTHOR,
    MAX_IMAGE_BYTES,
    clean_html,
    normalize_email,
    validate_about,
    validate_comment,
    validate_image,
    validate_newsletter,
    validate_recipe,
)


def test_recipe_markup_is_stripped_and_numbers_coerced(recipe_data):
    result = validate_recipe(recipe_data(title="  <b>Šaltibarščiai</b>  ", ingredients=["<i>Burokėliai</i>", "  "]))
    assert result.ok, result.errors
    assert result.data["title"] == "Šaltibarščiai"
    assert result.data["ingredients"] == ["Burokėliai"]
    assert result.data["prep_time"] == 15
    assert result.data["servings"] == 6


def test_recipe_defaults_when_optional_fields_missing():
    result = validate_recipe({"title": "Blynai", "ingredients": ["miltai"], "steps": ["kepti"]})
    assert result.ok
    assert result.data["prep_time"] == 0
    assert result.data["cook_time"] == 0
    assert result.data["servings"] == 1
    assert result.data["status"] == "draft"
    assert result.data["categories"] == []


def test_recipe_requires_title_ingredients_and_steps():
    result = validate_recipe({"title": "ab"})
    assert not result.ok
    assert "Reikia bent vieno ingrediento" in result.errors
    assert "Reikia bent vieno gaminimo žingsnio" in result.errors
    assert any("Pavadinimas" in e for e in result.errors)


def test_unknown_category_is_rejected(recipe_data):
    result = validate_recipe(recipe_data(categories=["Desertai", "Picos"]))
    assert "Nežinoma kategorija: Picos" in result.errors


def test_duplicate_tags_are_collapsed(recipe_data):
    result = validate_recipe(recipe_data(tags=["vasara", "vasara", "greita"]))
    assert result.data["tags"] == ["vasara", "greita"]


def test_invalid_numbers_and_status(recipe_data):
    result = validate_recipe(recipe_data(prep_time="pusvalandis", servings="0", status="archived"))
    assert "Paruošimo laikas turi būti sveikasis skaičius" in result.errors
    assert any(e.startswith("Porcijų skaičius turi būti tarp") for e in result.errors)
    assert "Neteisinga būsena: archived" in result.errors


def test_partial_validation_only_touches_present_fields():
    result = validate_recipe({"title": "Naujas pavadinimas"}, partial=True)
    assert result.ok
    assert result.data == {"title": "Naujas pavadinimas"}


def test_comment_defaults_author_and_drops_bad_email():
    result = validate_comment({"content": "Skanu!", "email": "ne-el-pastas"})
    assert result.ok
    assert result.data["author"] == DEFAULT_AUTHOR
    assert result.data["email"] is None


def test_comment_content_limits():
    assert not validate_comment({"content": "   "}).ok
    assert not validate_comment({"content": "x" * 1001}).ok
    assert validate_comment({"content": "x" * 1000}).ok


def test_normalize_email():
    assert normalize_email("  Jonas@Gmail.com ") == "jonas@gmail.com"
    assert normalize_email("jonas@") is None
    assert normalize_email(None) is None


def test_about_accepts_json_strings():
    raw = {
        "title": "Apie mane",
        "sections": json.dumps([{"title": "Istorija", "content": "<p>Tekstas</p>"}, {"title": "", "content": ""}]),
        "social": json.dumps({"instagram": "https://instagram.com/saukstas.meiles", "email": "LIDIJA@gmail.com"}),
    }
    result = validate_about(raw)
    assert result.ok, result.errors
    assert result.data["sections"] == [{"title": "Istorija", "content": "Tekstas"}]
    assert result.data["social"]["email"] == "lidija@gmail.com"
    assert result.data["social"]["facebook"] == ""


def test_about_rejects_broken_json():
    result = validate_about({"title": "Apie mane", "sections": "[{"})
    assert "Skyriai: netinkamas JSON formatas" in result.errors


def test_newsletter_html_is_whitelisted():
    assert clean_html('<p onclick="x()">Labas <strong>vakaras</strong></p><iframe></iframe>') == \
        "<p>Labas <strong>vakaras</strong></p>"
    result = validate_newsletter({"subject": "", "content": ""})
    assert len(result.errors) == 2


def test_image_rules():
    assert validate_image("image/webp", 1024) == []
    assert validate_image("application/pdf", 1024)
    assert validate_image("image/png", 0)
    assert validate_image("image/png", MAX_IMAGE_BYTES + 1)
