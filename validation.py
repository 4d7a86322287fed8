"""
Input validation and sanitization.

Every validator takes a raw field map (form fields or JSON) and returns a
ValidationResult: the cleaned data plus a list of human readable errors.
Nothing here raises on malformed input; callers decide what an error means.

Free text never keeps markup: bleach strips every tag and escapes the rest,
so the stored value is safe to render as-is.
"""
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import bleach
from email_validator import validate_email, EmailNotValidError

from schemas import RECIPE_STATUSES

CATEGORIES = (
    "Gėrimai ir kokteiliai",
    "Desertai",
    "Sriubos",
    "Užkandžiai",
    "Varškė",
    "Kiaušiniai",
    "Daržovės",
    "Bulvės",
    "Mėsa",
    "Žuvis ir jūros gėrybės",
    "Kruopos ir grūdai",
    "Be glitimo",
    "Be laktozės",
    "Gamta lėkštėje",
    "Iš močiutės virtuvės",
)

DEFAULT_AUTHOR = "Anonimas"

MAX_IMAGE_BYTES = 5 * 1024 * 1024
ALLOWED_IMAGE_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}

MAX_MINUTES = 7 * 24 * 60
MAX_SERVINGS = 1000

SOCIAL_KEYS = ("email", "instagram", "facebook", "pinterest")

# Formatting allowed in admin-written newsletter bodies
NEWSLETTER_TAGS = ["p", "br", "strong", "b", "em", "i", "u", "h1", "h2", "h3", "h4",
                   "ul", "ol", "li", "blockquote", "a", "img", "hr", "span", "div"]
NEWSLETTER_ATTRIBUTES = {"a": ["href", "title"], "img": ["src", "alt", "width", "height"]}

_INT_RE = re.compile(r"[+-]?\d+")


@dataclass
class ValidationResult:
    data: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def clean_text(value: Any) -> str:
    """Strip all markup and surrounding whitespace."""
    if value is None:
        return ""
    if not isinstance(value, str):
        value = str(value)
    return bleach.clean(value, tags=[], strip=True).strip()


def clean_html(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return bleach.clean(value, tags=NEWSLETTER_TAGS, attributes=NEWSLETTER_ATTRIBUTES, strip=True).strip()


def normalize_email(value: Any) -> Optional[str]:
    """Return the lower-cased address, or None when it is not a valid email."""
    if not isinstance(value, str):
        return None
    candidate = value.strip()
    if not candidate or len(candidate) > 254:
        return None
    try:
        info = validate_email(candidate, check_deliverability=False)
    except EmailNotValidError:
        return None
    return info.normalized.lower()


def _text(raw: Mapping, key: str, label: str, errors: List[str], *, required: bool = False,
          min_length: int = 0, max_length: Optional[int] = None) -> Optional[str]:
    value = raw.get(key)
    if isinstance(value, (list, tuple, dict)):
        errors.append(f"{label}: netinkamas formatas")
        return None
    text = clean_text(value)
    if not text:
        if required:
            errors.append(f"{label} yra privalomas")
        return None
    if len(text) < min_length:
        errors.append(f"{label} turi būti bent {min_length} simbolių")
    elif max_length is not None and len(text) > max_length:
        errors.append(f"{label} negali būti ilgesnis nei {max_length} simbolių")
    return text


def _text_list(raw: Mapping, key: str, label: str, errors: List[str],
               max_length: Optional[int] = None, unique: bool = False) -> List[str]:
    value = raw.get(key)
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        errors.append(f"{label}: netinkamas formatas")
        return []

    items = []
    for item in value:
        if isinstance(item, (list, tuple, dict)):
            errors.append(f"{label}: netinkamas formatas")
            continue
        text = clean_text(item)
        if not text:
            continue
        if max_length is not None and len(text) > max_length:
            errors.append(f"{label}: įrašas negali būti ilgesnis nei {max_length} simbolių")
            continue
        if unique and text in items:
            continue
        items.append(text)
    return items


def _integer(raw: Mapping, key: str, label: str, errors: List[str], default: int,
             minimum: int, maximum: int, partial: bool) -> Optional[int]:
    value = raw.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        return None if partial else default

    number = None
    if isinstance(value, bool):
        number = None
    elif isinstance(value, int):
        number = value
    elif isinstance(value, float) and value.is_integer():
        number = int(value)
    elif isinstance(value, str) and _INT_RE.fullmatch(value.strip()):
        number = int(value.strip())

    if number is None:
        errors.append(f"{label} turi būti sveikasis skaičius")
        return None
    if number < minimum or number > maximum:
        errors.append(f"{label} turi būti tarp {minimum} ir {maximum}")
        return None
    return number


def validate_recipe(raw: Mapping, partial: bool = False) -> ValidationResult:
    """
    Validate recipe fields.

    With partial=True only the fields present in `raw` are checked and
    returned, which is what an update merges into the stored record.
    """
    result = ValidationResult()
    data, errors = result.data, result.errors

    def wanted(key):
        return not partial or key in raw

    if wanted("title"):
        data["title"] = _text(raw, "title", "Pavadinimas", errors, required=True, min_length=3, max_length=200)
    if wanted("intro"):
        data["intro"] = _text(raw, "intro", "Įžanga", errors, max_length=500)
    if wanted("notes"):
        data["notes"] = _text(raw, "notes", "Pastabos", errors, max_length=5000)

    if wanted("categories"):
        categories = _text_list(raw, "categories", "Kategorijos", errors, unique=True)
        for name in categories:
            if name not in CATEGORIES:
                errors.append(f"Nežinoma kategorija: {name}")
        data["categories"] = categories

    if wanted("tags"):
        data["tags"] = _text_list(raw, "tags", "Žymos", errors, max_length=50, unique=True)

    if wanted("ingredients"):
        ingredients = _text_list(raw, "ingredients", "Ingredientai", errors, max_length=500)
        if not ingredients:
            errors.append("Reikia bent vieno ingrediento")
        data["ingredients"] = ingredients

    if wanted("steps"):
        steps = _text_list(raw, "steps", "Gaminimo žingsniai", errors, max_length=2000)
        if not steps:
            errors.append("Reikia bent vieno gaminimo žingsnio")
        data["steps"] = steps

    for key, label, default, minimum, maximum in (
        ("prep_time", "Paruošimo laikas", 0, 0, MAX_MINUTES),
        ("cook_time", "Gaminimo laikas", 0, 0, MAX_MINUTES),
        ("servings", "Porcijų skaičius", 1, 1, MAX_SERVINGS),
    ):
        number = _integer(raw, key, label, errors, default, minimum, maximum, partial)
        if number is not None:
            data[key] = number

    if wanted("status"):
        status = clean_text(raw.get("status")).lower() or "draft"
        if status not in RECIPE_STATUSES:
            errors.append(f"Neteisinga būsena: {status}")
        data["status"] = status

    return result


def validate_comment(raw: Mapping) -> ValidationResult:
    result = ValidationResult()
    data, errors = result.data, result.errors

    data["author"] = _text(raw, "author", "Vardas", errors, max_length=100) or DEFAULT_AUTHOR
    # An invalid optional email is dropped, not rejected
    data["email"] = normalize_email(raw.get("email"))
    data["content"] = _text(raw, "content", "Komentaras", errors, required=True, min_length=1, max_length=1000)
    return result


def _decode_json(value: Any, label: str, errors: List[str], expected: type):
    if isinstance(value, str):
        if not value.strip():
            return expected()
        try:
            value = json.loads(value)
        except ValueError:
            errors.append(f"{label}: netinkamas JSON formatas")
            return expected()
    if value is None:
        return expected()
    if not isinstance(value, expected):
        errors.append(f"{label}: netinkamas formatas")
        return expected()
    return value


def validate_about(raw: Mapping) -> ValidationResult:
    result = ValidationResult()
    data, errors = result.data, result.errors

    data["title"] = _text(raw, "title", "Pavadinimas", errors, required=True, max_length=200)
    data["subtitle"] = _text(raw, "subtitle", "Paantraštė", errors, max_length=300) or ""
    data["intro"] = _text(raw, "intro", "Įžanga", errors, max_length=5000) or ""

    sections = []
    for index, section in enumerate(_decode_json(raw.get("sections"), "Skyriai", errors, list), start=1):
        if not isinstance(section, dict):
            errors.append(f"Skyrius {index}: netinkamas formatas")
            continue
        title = _text(section, "title", f"Skyriaus {index} pavadinimas", errors, max_length=200) or ""
        content = _text(section, "content", f"Skyriaus {index} tekstas", errors, max_length=10000) or ""
        if title or content:
            sections.append({"title": title, "content": content})
    data["sections"] = sections

    social_raw = _decode_json(raw.get("social"), "Socialiniai tinklai", errors, dict)
    social = {}
    for key in SOCIAL_KEYS:
        if key == "email":
            social[key] = normalize_email(social_raw.get(key)) or ""
        else:
            social[key] = _text(social_raw, key, key, errors, max_length=300) or ""
    data["social"] = social
    return result


def validate_newsletter(raw: Mapping) -> ValidationResult:
    result = ValidationResult()
    result.data["subject"] = _text(raw, "subject", "Tema", result.errors, required=True, max_length=200)
    content = clean_html(raw.get("content"))
    if not content:
        result.errors.append("Laiško turinys yra privalomas")
    result.data["content"] = content
    return result


def validate_image(content_type: Optional[str], size: int) -> List[str]:
    errors = []
    if (content_type or "").lower() not in ALLOWED_IMAGE_TYPES:
        errors.append("Leidžiami tik JPEG, PNG, GIF ir WEBP paveikslėliai")
    if size <= 0:
        errors.append("Paveikslėlio failas tuščias")
    elif size > MAX_IMAGE_BYTES:
        errors.append("Paveikslėlis negali būti didesnis nei 5 MB")
    return errors
