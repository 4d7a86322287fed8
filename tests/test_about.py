import json
import os

import pytest

from about import AboutService, DEFAULT_ABOUT
from errors import ValidationError


@pytest.fixture
def about(db, media):
    return AboutService(db, media)


def about_fields(**overrides):
    fields = {
        "title": "Apie mane",
        "subtitle": "Trumpai",
        "intro": "Sveiki!",
        "sections": json.dumps([{"title": "Istorija", "content": "Viskas prasidėjo kaime."}]),
        "social": json.dumps({"instagram": "https://instagram.com/saukstas.meiles"}),
    }
    fields.update(overrides)
    return fields


def test_default_page_until_saved(about):
    page = about.get_about()
    assert page["title"] == DEFAULT_ABOUT["title"]
    assert page["image_url"] is None
    page["sections"].clear()
    assert about.get_about()["sections"]


def test_save_replaces_the_page(about):
    saved = about.save_about(about_fields())
    assert saved["title"] == "Apie mane"
    assert saved["sections"] == [{"title": "Istorija", "content": "Viskas prasidėjo kaime."}]
    assert saved["social"]["instagram"] == "https://instagram.com/saukstas.meiles"
    assert saved["social"]["facebook"] == ""


def test_images_are_kept_or_replaced(about, media, png):
    first = about.save_about(about_fields(), image=png(), sidebar_image=png())
    assert first["image"].startswith("about/")
    assert first["image_url"] == f"/media/{first['image']}"

    kept = about.save_about(about_fields(title="Kitas"))
    assert kept["image"] == first["image"]

    replaced = about.save_about(about_fields(), image=png())
    assert replaced["image"] != first["image"]
    assert replaced["sidebar_image"] == first["sidebar_image"]
    assert media.resolve(*first["image"].split("/")) is not None
    assert not os.path.exists(media.resolve(*first["image"].split("/")))


def test_invalid_page_is_rejected(about, db):
    with pytest.raises(ValidationError):
        about.save_about(about_fields(title="", sections="{nope"))
    assert db["settings"].count_documents({}) == 0
