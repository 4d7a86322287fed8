"""
About page: a single settings document (`settings/about`) with two images.
"""
import copy
import logging
from typing import Mapping, Optional

from database import utcnow
from errors import ValidationError
from media import IncomingFile, MediaStore
from schemas import AboutPage
from validation import validate_about

logger = logging.getLogger(__name__)

ABOUT_ID = "about"
IMAGE_FIELDS = ("image", "sidebar_image")

# Served until an admin saves the page for the first time
DEFAULT_ABOUT = {
    "title": "Apie Mane",
    "subtitle": "Kelionė į širdį per maistą, pilną gamtos dovanų, švelnumo ir paprastumo",
    "intro": (
        "Sveiki, esu Lidija – keliaujanti miško takeliais, pievomis ir laukais, kur kiekvienas "
        "žolės stiebelis, vėjo dvelksmas ar laukinė uoga tampa įkvėpimu naujam skoniui."
    ),
    "sections": [
        {
            "title": "Mano istorija",
            "content": (
                "Viskas prasidėjo mažoje kaimo virtuvėje, kur mano močiutė Ona ruošdavo kvapnius "
                "patiekalus iš paprastų ingredientų."
            ),
        },
        {
            "title": "Mano filosofija",
            "content": (
                "Tikiu, kad maistas yra daugiau nei tik kuras mūsų kūnui – tai būdas sujungti žmones, "
                "išsaugoti tradicijas ir kurti naujus prisiminimus."
            ),
        },
    ],
    "social": {
        "email": "lidija@saukstas-meiles.lt",
        "facebook": "https://facebook.com/saukstas.meiles",
        "instagram": "https://instagram.com/saukstas.meiles",
        "pinterest": "https://pinterest.com/saukstas.meiles",
    },
    "image": None,
    "sidebar_image": None,
}


class AboutService:
    def __init__(self, db, media: MediaStore):
        self.db = db
        self.media = media

    def _view(self, page: dict) -> dict:
        for field in IMAGE_FIELDS:
            page[f"{field}_url"] = self.media.url_for(page.get(field))
        return page

    def get_about(self) -> dict:
        doc = self.db["settings"].find_one({"_id": ABOUT_ID})
        if not doc:
            return self._view(copy.deepcopy(DEFAULT_ABOUT))
        doc.pop("_id", None)
        return self._view(doc)

    def save_about(self, raw: Mapping, image: Optional[IncomingFile] = None,
                   sidebar_image: Optional[IncomingFile] = None) -> dict:
        """
        Replace the About page wholesale.

        Images that are not re-uploaded keep their current value; a replaced
        image is deleted only after the new document is written.
        """
        uploads = {"image": image, "sidebar_image": sidebar_image}
        result = validate_about(raw)
        errors = list(result.errors)
        for upload in uploads.values():
            if upload is not None:
                errors.extend(upload.validate())
        if errors:
            raise ValidationError(errors)

        current = self.db["settings"].find_one({"_id": ABOUT_ID}) or {}
        stored = {}
        try:
            for field, upload in uploads.items():
                if upload is not None:
                    stored[field] = self.media.store(upload, "about").key

            page = AboutPage(**result.data, **{f: stored.get(f, current.get(f)) for f in IMAGE_FIELDS})
            doc = page.model_dump()
            doc["updated_at"] = utcnow()
            self.db["settings"].replace_one({"_id": ABOUT_ID}, doc, upsert=True)
        except Exception:
            for key in stored.values():
                self.media.delete(key)
            raise

        for field in stored:
            if current.get(field):
                self.media.delete(current[field])

        logger.info(f"About page saved ({', '.join(stored) or 'no new images'})")
        return self.get_about()
