"""
Newsletter: subscriber records, the SMTP mailer and the dispatcher.

Sends are strictly sequential with a fixed pause between recipients to
stay under the mail provider's rate limits. One failed recipient never
aborts the batch.
"""
import html
import logging
import smtplib
import ssl
import time
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr
from typing import Callable, Iterable, List, Optional
from urllib.parse import urlencode

import bleach
from jinja2 import Environment
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from database import create_document, get_documents, utcnow
from errors import NotFound, UpstreamFailure, ValidationError
from schemas import Subscriber
from validation import normalize_email

logger = logging.getLogger(__name__)

SITE_NAME = "Šaukštas Meilės"
INVALID_EMAIL = "Neteisingas el. pašto adresas"

_env = Environment(autoescape=True, trim_blocks=True, lstrip_blocks=True)

NEWSLETTER_TEMPLATE = _env.from_string("""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{{ subject }}</title></head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333; margin: 0; padding: 0;">
<div style="max-width: 600px; margin: 0 auto; padding: 20px;">
  <div style="text-align: center; padding: 20px 0; border-bottom: 2px solid #eee8e0; font-size: 24px; color: #7f4937;">{{ site_name }}</div>
  <div style="padding: 20px 0;">{{ content|safe }}</div>
  <div style="margin-top: 40px; padding-top: 20px; border-top: 1px solid #eee8e0; text-align: center; font-size: 12px; color: #7a7a7a;">
    <p>{{ site_name }} - naminiai lietuviški receptai su meile</p>
    <p><a href="{{ unsubscribe_url }}" style="color: #7f4937;">Atsisakyti naujienlaiškio prenumeratos</a></p>
  </div>
</div>
</body>
</html>
""")

RECIPE_TEMPLATE = _env.from_string("""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Naujas receptas: {{ recipe.title }}</title></head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333; margin: 0; padding: 0;">
<div style="max-width: 600px; margin: 0 auto; padding: 20px;">
  <div style="text-align: center; padding: 20px 0; border-bottom: 2px solid #eee8e0; font-size: 24px; color: #7f4937;">{{ site_name }}</div>
  <h1 style="font-size: 24px; color: #7f4937; margin: 20px 0; text-align: center;">{{ recipe.title }}</h1>
  {% if image_url %}
  <img src="{{ image_url }}" alt="{{ recipe.title }}" style="width: 100%; max-height: 300px; border-radius: 5px; margin: 20px 0;">
  {% endif %}
  {% if recipe.intro %}
  <div style="font-style: italic; color: #7f4937; margin-bottom: 20px; padding-left: 15px; border-left: 3px solid #7f4937;">{{ recipe.intro }}</div>
  {% endif %}
  <div style="text-align: center;">
    <a href="{{ recipe_url }}" style="display: inline-block; background-color: #7f4937; color: white; text-decoration: none; padding: 10px 20px; border-radius: 4px; margin: 20px 0;">Skaityti visą receptą</a>
  </div>
  <div style="margin-top: 40px; padding-top: 20px; border-top: 1px solid #eee8e0; text-align: center; font-size: 12px; color: #7a7a7a;">
    <p>{{ site_name }} - naminiai lietuviški receptai su meile</p>
    <p><a href="{{ unsubscribe_url }}" style="color: #7f4937;">Atsisakyti naujienlaiškio prenumeratos</a></p>
  </div>
</div>
</body>
</html>
""")


# ---------------------- subscribers ----------------------
class SubscriberService:
    def __init__(self, db):
        self.db = db

    @property
    def collection(self):
        return self.db["subscriber"]

    def ensure_indexes(self):
        self.collection.create_index("email", unique=True)

    def subscribe(self, email) -> dict:
        address = normalize_email(email)
        if not address:
            raise ValidationError([INVALID_EMAIL])

        existing = self.collection.find_one({"email": address})
        if existing and existing.get("active", True):
            return {"success": True, "message": "Jūs jau esate užsiprenumeravę naujienlaiškį."}

        if existing:
            self.collection.update_one(
                {"_id": existing["_id"]},
                {"$set": {"active": True, "subscribed_at": utcnow(), "unsubscribed_at": None}},
            )
            logger.info(f"Subscriber {address} re-activated")
            return {"success": True, "message": "Sveiki sugrįžę! Prenumerata atnaujinta."}

        try:
            create_document("subscriber", Subscriber(email=address, subscribed_at=utcnow()), database=self.db)
        except DuplicateKeyError:
            # Lost a race with a concurrent subscribe for the same address
            return {"success": True, "message": "Jūs jau esate užsiprenumeravę naujienlaiškį."}
        logger.info(f"New subscriber {address}")
        return {"success": True, "message": "Ačiū! Sėkmingai užsiprenumeravote naujienlaiškį."}

    def unsubscribe(self, email) -> dict:
        address = normalize_email(email)
        result = None
        if address:
            result = self.collection.update_one(
                {"email": address, "active": True},
                {"$set": {"active": False, "unsubscribed_at": utcnow()}},
            )
        if not result or not result.modified_count:
            return {"success": False, "message": "Šis el. pašto adresas nerastas prenumeratorių sąraše."}
        logger.info(f"Subscriber {address} unsubscribed")
        return {"success": True, "message": "Sėkmingai atsisakėte naujienlaiškio prenumeratos."}

    def list_subscribers(self, active_only: bool = True) -> List[dict]:
        query = {"active": True} if active_only else {}
        docs = get_documents("subscriber", query, sort=[("subscribed_at", DESCENDING)], database=self.db)
        return [
            {
                "email": d["email"],
                "active": d.get("active", True),
                "subscribed_at": d.get("subscribed_at"),
                "unsubscribed_at": d.get("unsubscribed_at"),
            }
            for d in docs
        ]

    def remove_subscriber(self, email) -> None:
        address = normalize_email(email) or (email or "").strip().lower()
        if not self.collection.delete_one({"email": address}).deleted_count:
            raise NotFound("Prenumeratorius nerastas")
        logger.info(f"Subscriber {address} removed")

    def import_subscribers(self, emails: Iterable[str]) -> dict:
        imported, skipped = 0, []
        for email in emails or []:
            address = normalize_email(email)
            if not address:
                skipped.append(email)
                continue
            existing = self.collection.find_one({"email": address})
            if existing and existing.get("active", True):
                continue
            if existing:
                self.collection.update_one({"_id": existing["_id"]},
                                           {"$set": {"active": True, "unsubscribed_at": None}})
            else:
                create_document("subscriber", Subscriber(email=address, subscribed_at=utcnow()), database=self.db)
            imported += 1
        logger.info(f"Imported {imported} subscribers, skipped {len(skipped)} invalid addresses")
        return {"imported": imported, "skipped": skipped}

    def active_emails(self) -> List[str]:
        docs = get_documents("subscriber", {"active": True}, sort=[("subscribed_at", DESCENDING)], database=self.db)
        return [d["email"] for d in docs]


# ---------------------- mail ----------------------
class Mailer:
    def __init__(self, host: str, port: int, username: Optional[str], password: Optional[str],
                 sender: Optional[str] = None, timeout: int = 30):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender or username
        self.timeout = timeout

    @classmethod
    def from_config(cls, app_config):
        return cls(app_config.EMAIL_HOST, app_config.EMAIL_PORT, app_config.EMAIL_USER,
                   app_config.EMAIL_PASS, app_config.EMAIL_FROM, app_config.EMAIL_TIMEOUT)

    @property
    def enabled(self) -> bool:
        return bool(self.username and self.password)

    def build_message(self, to: str, subject: str, html_body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = formataddr((SITE_NAME, self.sender))
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(html.unescape(bleach.clean(html_body, tags=[], strip=True)).strip())
        msg.add_alternative(html_body, subtype="html")
        return msg

    def send(self, to: str, subject: str, html_body: str) -> None:
        if not self.enabled:
            raise UpstreamFailure("Mail credentials are not configured")
        msg = self.build_message(to, subject, html_body)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                smtp.starttls(context=ssl.create_default_context())
                smtp.login(self.username, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise UpstreamFailure(f"SMTP delivery to {to} failed: {e}")


@dataclass
class DispatchReport:
    success_count: int = 0
    total_count: int = 0
    failed: List[str] = field(default_factory=list)


class NewsletterDispatcher:
    def __init__(self, subscribers: SubscriberService, mailer: Mailer, site_url: str,
                 token_factory: Callable[[str], str], delay: float = 0.1,
                 sleep: Callable[[float], None] = time.sleep):
        self.subscribers = subscribers
        self.mailer = mailer
        self.site_url = site_url.rstrip("/")
        self.token_factory = token_factory
        self.delay = delay
        self.sleep = sleep

    def unsubscribe_url(self, email: str) -> str:
        query = urlencode({"email": email, "token": self.token_factory(email)})
        return f"{self.site_url}/unsubscribe?{query}"

    def absolute_url(self, url: Optional[str]) -> Optional[str]:
        if not url or url.startswith(("http://", "https://")):
            return url
        return f"{self.site_url}{url}"

    def render_newsletter(self, email: str, subject: str, content: str) -> str:
        return NEWSLETTER_TEMPLATE.render(site_name=SITE_NAME, subject=subject, content=content,
                                          unsubscribe_url=self.unsubscribe_url(email))

    def render_recipe(self, email: str, recipe: dict) -> str:
        return RECIPE_TEMPLATE.render(
            site_name=SITE_NAME,
            recipe=recipe,
            recipe_url=f"{self.site_url}/recipe/{recipe['id']}",
            image_url=self.absolute_url(recipe.get("image_url")),
            unsubscribe_url=self.unsubscribe_url(email),
        )

    def send(self, subject: str, content: str) -> DispatchReport:
        """Send one newsletter to every active subscriber, one at a time."""
        recipients = self.subscribers.active_emails()
        report = DispatchReport(total_count=len(recipients))
        if recipients and not self.mailer.enabled:
            raise UpstreamFailure("Mail credentials are not configured")

        for index, email in enumerate(recipients):
            if index:
                self.sleep(self.delay)
            try:
                self.mailer.send(email, subject, self.render_newsletter(email, subject, content))
            except Exception as e:
                logger.error(f"Newsletter to {email} failed: {getattr(e, 'detail', e)}")
                report.failed.append(email)
                continue
            report.success_count += 1

        logger.info(f"Newsletter {subject!r} sent to {report.success_count}/{report.total_count} subscribers")
        return report

    def send_test(self, email, recipe: dict) -> None:
        address = normalize_email(email)
        if not address:
            raise ValidationError([INVALID_EMAIL])
        self.mailer.send(address, f"Naujas receptas: {recipe['title']}", self.render_recipe(address, recipe))
        logger.info(f"Test newsletter for recipe {recipe['id']} sent to {address}")
