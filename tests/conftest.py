import mongomock
import pytest
from fastapi.testclient import TestClient

from config import TestingConfig
from errors import UpstreamFailure
from main import create_app
from media import IncomingFile, MediaStore
from recipes import RecipeService

ADMIN = {"username": "lidija", "email": "lidija@saukstas-meiles.lt", "password": "slaptas-zodis-123"}

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


class FakeClock:
    def __init__(self, start=1_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class RecordingMailer:
    enabled = True

    def __init__(self):
        self.sent = []
        self.fail_for = set()

    def send(self, to, subject, html_body):
        if to in self.fail_for:
            raise UpstreamFailure(f"mailbox {to} rejected the message")
        self.sent.append({"to": to, "subject": subject, "html": html_body})


@pytest.fixture
def mongo():
    return mongomock.MongoClient()


@pytest.fixture
def app_config(tmp_path):
    return TestingConfig(UPLOAD_DIR=str(tmp_path / "uploads"))


@pytest.fixture
def db(mongo, app_config):
    return mongo[app_config.DATABASE_NAME]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def media(app_config):
    return MediaStore(app_config.UPLOAD_DIR)


@pytest.fixture
def recipes(db, media):
    return RecipeService(db, media)


@pytest.fixture
def png():
    def build(name="nuotrauka.png"):
        return IncomingFile(name, "image/png", PNG_BYTES)
    return build


@pytest.fixture
def recipe_data():
    def build(**overrides):
        data = {
            "title": "Varškės apkepas",
            "intro": "Minkštas ir purus, kaip pas močiutę.",
            "categories": ["Desertai", "Varškė"],
            "tags": ["vaikams"],
            "ingredients": ["500 g varškės", "2 kiaušiniai", "3 šaukštai cukraus"],
            "steps": ["Viską sumaišyti.", "Kepti 40 min. 180 laipsnių orkaitėje."],
            "prep_time": "15",
            "cook_time": "40",
            "servings": "6",
            "status": "published",
        }
        data.update(overrides)
        return data
    return build


@pytest.fixture
def app(app_config, mongo, mailer, clock):
    return create_app(app_config, mongo_client=mongo, mailer=mailer, clock=clock, sleep=lambda seconds: None)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin_headers(client, app_config):
    r = client.post("/auth/setup", json=dict(ADMIN, setup_key=app_config.ADMIN_SETUP_KEY))
    assert r.status_code == 200, r.text
    r = client.post("/auth/login", json={"username": ADMIN["username"], "password": ADMIN["password"]})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['token']}"}
