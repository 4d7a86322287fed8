"""
Recipe and comment access API.

RecipeService maps the REST operations onto the `recipe`, `comment` and
`category` collections. Validation happens first, then media, then the
database write; a failed write removes the blob it just stored.
"""
import logging
import math
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from pymongo import ASCENDING, DESCENDING

from database import create_document, get_documents, serialize_doc, to_object_id, utcnow
from errors import NotFound, ValidationError
from media import IncomingFile, MediaStore
from schemas import COMMENT_STATUSES, CategoryCount, Comment, Recipe, RECIPE_STATUSES
from validation import validate_comment, validate_recipe

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 12
MAX_LIMIT = 50
ADMIN_PAGE_SIZE = 10
# Keeps the skip offset well inside a 64-bit integer
MAX_PAGE = 10000

# Newest first; _id breaks ties between records created in the same millisecond
NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]

RECIPE_NOT_FOUND = "Receptas nerastas"
COMMENT_NOT_FOUND = "Komentaras nerastas"
UNKNOWN_RECIPE_TITLE = "Nežinomas receptas"

TRUTHY = ("1", "true", "yes", "on")


@dataclass
class RecipeFilter:
    page: int = 1
    limit: int = DEFAULT_LIMIT
    category: Optional[str] = None
    status: Optional[str] = None
    popular: bool = False


@dataclass
class Page:
    items: List[Dict[str, Any]]
    meta: Dict[str, Any]


class RecipeService:
    def __init__(self, db, media: MediaStore):
        self.db = db
        self.media = media

    # ---------------------- helpers ----------------------
    def _view(self, doc: dict) -> dict:
        recipe = serialize_doc(doc)
        recipe["image_url"] = self.media.url_for(recipe.get("image"))
        return recipe

    def _find(self, recipe_id: str, public: bool = False) -> dict:
        oid = to_object_id(recipe_id)
        doc = self.db["recipe"].find_one({"_id": oid}) if oid else None
        if not doc or (public and doc.get("status") != "published"):
            raise NotFound(RECIPE_NOT_FOUND)
        return doc

    def _titles(self, recipe_ids) -> Dict[str, str]:
        oids = [oid for oid in (to_object_id(rid) for rid in set(recipe_ids)) if oid]
        if not oids:
            return {}
        docs = self.db["recipe"].find({"_id": {"$in": oids}}, {"title": 1})
        return {str(d["_id"]): d.get("title") for d in docs}

    # ---------------------- recipes ----------------------
    def list_recipes(self, flt: RecipeFilter, public: bool = True) -> Page:
        """
        List recipes newest first.

        Public callers only ever see published recipes. `has_more` is true
        when the page came back full, so an exactly full last page still
        reports more. `popular` has no real metric behind it: it returns the
        first `limit` recipes in the default order and ignores `page`.
        """
        page = min(max(int(flt.page or 1), 1), MAX_PAGE)
        limit = min(max(int(flt.limit or DEFAULT_LIMIT), 1), MAX_LIMIT)

        query: Dict[str, Any] = {}
        if public:
            query["status"] = "published"
        elif flt.status and flt.status != "all":
            query["status"] = flt.status
        if flt.category:
            query["categories"] = flt.category

        total = self.db["recipe"].count_documents(query)
        if flt.popular:
            docs = get_documents("recipe", query, limit=limit, sort=NEWEST_FIRST, database=self.db)
            meta = {"has_more": False, "total": total, "page": 1, "limit": limit, "popular": True}
            return Page([self._view(d) for d in docs], meta)

        docs = get_documents("recipe", query, limit=limit, sort=NEWEST_FIRST,
                             skip=(page - 1) * limit, database=self.db)
        items = [self._view(d) for d in docs]
        meta = {"has_more": len(items) == limit, "total": total, "page": page, "limit": limit}
        return Page(items, meta)

    def admin_list_recipes(self, page: int = 1, status: Optional[str] = None) -> Page:
        page = min(max(int(page or 1), 1), MAX_PAGE)
        query = {"status": status} if status in RECIPE_STATUSES else {}
        total = self.db["recipe"].count_documents(query)
        docs = get_documents("recipe", query, limit=ADMIN_PAGE_SIZE, sort=NEWEST_FIRST,
                             skip=(page - 1) * ADMIN_PAGE_SIZE, database=self.db)
        meta = {"pages": math.ceil(total / ADMIN_PAGE_SIZE), "total": total, "page": page}
        return Page([self._view(d) for d in docs], meta)

    def get_recipe(self, recipe_id: str, public: bool = False) -> dict:
        return self._view(self._find(recipe_id, public=public))

    def get_recipe_page(self, recipe_id: str) -> Dict[str, Any]:
        """Public recipe plus its approved comments; comments are best effort."""
        recipe = self.get_recipe(recipe_id, public=True)
        try:
            comments = self._comments_for(recipe["id"])
        except Exception as e:
            logger.warning(f"Could not load comments for recipe {recipe['id']}: {e}", exc_info=True)
            comments = []
        return {"recipe": recipe, "comments": comments}

    def create_recipe(self, raw: Mapping, image: Optional[IncomingFile] = None) -> dict:
        result = validate_recipe(raw)
        errors = list(result.errors)
        if image is not None:
            errors.extend(image.validate())
        if errors:
            raise ValidationError(errors)

        stored = self.media.store(image, "recipes") if image is not None else None
        data = dict(result.data, image=stored.key if stored else None)
        try:
            recipe_id = create_document("recipe", Recipe(**data), database=self.db)
        except Exception:
            if stored:
                self.media.delete(stored.key)
            raise

        logger.info(f"Created recipe {recipe_id} ({data['title']!r}, {data['status']})")
        self.refresh_categories()
        return self.get_recipe(recipe_id)

    def update_recipe(self, recipe_id: str, raw: Mapping, image: Optional[IncomingFile] = None) -> dict:
        existing = self._find(recipe_id)
        result = validate_recipe(raw, partial=True)
        errors = list(result.errors)
        if image is not None:
            errors.extend(image.validate())
        if errors:
            raise ValidationError(errors)

        changes = dict(result.data)
        old_image = existing.get("image")
        stored = self.media.store(image, "recipes") if image is not None else None
        if stored:
            changes["image"] = stored.key
        elif str(raw.get("remove_image", "")).lower() in TRUTHY:
            changes["image"] = None
        changes["updated_at"] = utcnow()

        try:
            self.db["recipe"].update_one({"_id": existing["_id"]}, {"$set": changes})
        except Exception:
            if stored:
                self.media.delete(stored.key)
            raise

        # The old blob goes only once the record points at its replacement
        if old_image and "image" in changes and changes["image"] != old_image:
            self.media.delete(old_image)

        logger.info(f"Updated recipe {existing['_id']} ({', '.join(sorted(changes))})")
        self.refresh_categories()
        return self.get_recipe(str(existing["_id"]))

    def delete_recipe(self, recipe_id: str) -> None:
        existing = self._find(recipe_id)
        if existing.get("image"):
            self.media.delete(existing["image"])
        removed = self.db["comment"].delete_many({"recipe_id": str(existing["_id"])}).deleted_count
        self.db["recipe"].delete_one({"_id": existing["_id"]})
        logger.info(f"Deleted recipe {existing['_id']} and {removed} comments")
        self.refresh_categories()

    # ---------------------- categories ----------------------
    def compute_category_counts(self) -> List[Dict[str, Any]]:
        """Tally category membership over every recipe, sorted by name."""
        counts = Counter()
        for doc in self.db["recipe"].find({}, {"categories": 1}):
            counts.update(name for name in (doc.get("categories") or []) if name)
        return [CategoryCount(name=name, count=count).model_dump() for name, count in sorted(counts.items())]

    def refresh_categories(self) -> List[Dict[str, Any]]:
        counts = self.compute_category_counts()
        collection = self.db["category"]
        collection.delete_many({})
        if counts:
            collection.insert_many([dict(c) for c in counts])
        logger.debug(f"Category view rebuilt with {len(counts)} categories")
        return counts

    def list_categories(self) -> List[Dict[str, Any]]:
        docs = get_documents("category", sort=[("name", ASCENDING)], database=self.db)
        return [{"name": d["name"], "count": d.get("count", 0)} for d in docs]

    # ---------------------- comments ----------------------
    def _comment_view(self, doc: dict, admin: bool = False) -> dict:
        comment = serialize_doc(doc)
        if not admin:
            comment.pop("email", None)
        return comment

    def _comments_for(self, recipe_id: str, include_pending: bool = False, admin: bool = False) -> List[dict]:
        query = {"recipe_id": recipe_id}
        if not include_pending:
            query["status"] = "approved"
        docs = get_documents("comment", query, sort=NEWEST_FIRST, database=self.db)
        return [self._comment_view(d, admin=admin) for d in docs]

    def list_comments(self, recipe_id: str, include_pending: bool = False, public: bool = True) -> List[dict]:
        """Comments of a recipe. Public callers get 404 for drafts, like the recipe itself."""
        recipe = self._find(recipe_id, public=public)
        return self._comments_for(str(recipe["_id"]), include_pending, admin=include_pending)

    def add_comment(self, recipe_id: str, raw: Mapping, public: bool = True) -> dict:
        recipe = self._find(recipe_id, public=public)
        result = validate_comment(raw)
        if not result.ok:
            raise ValidationError(result.errors)

        comment = Comment(recipe_id=str(recipe["_id"]), status="pending", **result.data)
        comment_id = create_document("comment", comment, database=self.db)
        logger.info(f"New comment {comment_id} on recipe {recipe['_id']} awaiting approval")
        return self._comment_view(self.db["comment"].find_one({"_id": to_object_id(comment_id)}))

    def _find_comment(self, recipe_id: str, comment_id: str) -> dict:
        oid = to_object_id(comment_id)
        doc = self.db["comment"].find_one({"_id": oid, "recipe_id": recipe_id}) if oid else None
        if not doc:
            raise NotFound(COMMENT_NOT_FOUND)
        return doc

    def approve_comment(self, recipe_id: str, comment_id: str) -> dict:
        doc = self._find_comment(recipe_id, comment_id)
        self.db["comment"].update_one({"_id": doc["_id"]},
                                      {"$set": {"status": "approved", "updated_at": utcnow()}})
        return self._comment_view(self.db["comment"].find_one({"_id": doc["_id"]}), admin=True)

    def delete_comment(self, recipe_id: str, comment_id: str) -> None:
        doc = self._find_comment(recipe_id, comment_id)
        self.db["comment"].delete_one({"_id": doc["_id"]})
        logger.info(f"Deleted comment {comment_id} from recipe {recipe_id}")

    def admin_list_comments(self, status: Optional[str] = None) -> List[dict]:
        query = {"status": status} if status in COMMENT_STATUSES else {}
        docs = get_documents("comment", query, sort=NEWEST_FIRST, database=self.db)
        titles = self._titles(d.get("recipe_id") for d in docs)
        comments = []
        for doc in docs:
            comment = self._comment_view(doc, admin=True)
            comment["recipe_title"] = titles.get(doc.get("recipe_id")) or UNKNOWN_RECIPE_TITLE
            comments.append(comment)
        return comments

    # ---------------------- dashboard ----------------------
    def dashboard_stats(self) -> Dict[str, Any]:
        recipes = self.db["recipe"]
        comments = self.db["comment"]

        recent_recipes = get_documents("recipe", limit=3, sort=NEWEST_FIRST, database=self.db)
        recent_comments = get_documents("comment", limit=2, sort=NEWEST_FIRST, database=self.db)
        titles = self._titles(c.get("recipe_id") for c in recent_comments)

        def excerpt(text):
            text = text or ""
            return text[:50] + "..." if len(text) > 50 else text

        return {
            "recipes": {
                "total": recipes.count_documents({}),
                "published": recipes.count_documents({"status": "published"}),
                "draft": recipes.count_documents({"status": "draft"}),
            },
            "comments": {
                "total": comments.count_documents({}),
                "pending": comments.count_documents({"status": "pending"}),
                "approved": comments.count_documents({"status": "approved"}),
            },
            "media": {
                "total": recipes.count_documents({"image": {"$ne": None}}),
            },
            "subscribers": {
                "active": self.db["subscriber"].count_documents({"active": True}),
            },
            "recent_recipes": [
                {
                    "id": str(r["_id"]),
                    "title": r.get("title"),
                    "categories": r.get("categories", []),
                    "created_at": r.get("created_at"),
                    "image_url": self.media.url_for(r.get("image")),
                }
                for r in recent_recipes
            ],
            "recent_comments": [
                {
                    "id": str(c["_id"]),
                    "author": c.get("author"),
                    "content": excerpt(c.get("content")),
                    "recipe_title": titles.get(c.get("recipe_id")) or UNKNOWN_RECIPE_TITLE,
                    "created_at": c.get("created_at"),
                }
                for c in recent_comments
            ],
        }
