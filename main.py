import logging
import math
import os
import time
from contextlib import asynccontextmanager
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.security import OAuth2PasswordBearer
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
from about import AboutService
from config import get_config
from errors import ApiError, Forbidden, NotFound, RateLimited, UpstreamFailure, ValidationError
from media import IncomingFile, MediaStore
from newsletter import Mailer, NewsletterDispatcher, SubscriberService
from recipes import RecipeFilter, RecipeService, DEFAULT_LIMIT, MAX_LIMIT, MAX_PAGE
from schemas import (
    AdminSetupRequest,
    CommentCreate,
    LoginRequest,
    NewsletterSend,
    NewsletterTest,
    SubscribeRequest,
    SubscriberImport,
)
from security import AuthGate, LoginGuard
from validation import validate_newsletter

settings = get_config()

logging.basicConfig(
    level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
    format="[%(asctime)s] %(levelname)s in %(module)s: %(message)s",
)
logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)

RECIPE_LIST_FIELDS = ("categories", "tags", "ingredients", "steps")

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}

router = APIRouter()


# ---------------------- Dependencies ----------------------
def get_recipes(request: Request) -> RecipeService:
    return request.app.state.recipes


def get_about_service(request: Request) -> AboutService:
    return request.app.state.about


def get_subscribers(request: Request) -> SubscriberService:
    return request.app.state.subscribers


def get_auth(request: Request) -> AuthGate:
    return request.app.state.auth


def get_dispatcher(request: Request) -> NewsletterDispatcher:
    return request.app.state.dispatcher


def get_current_admin(token: Optional[str] = Depends(oauth2_scheme), auth: AuthGate = Depends(get_auth)) -> dict:
    return auth.verify(token)


limiter = Limiter(
    key_func=get_remote_address,
    strategy="fixed-window",
    storage_uri=settings.RATELIMIT_STORAGE_URI,
)

# Routes are decorated at import time; limits are looked up per request so
# create_app can apply its own configuration.
_rate_limits = dict(settings.RATE_LIMITS)


def rate_limit(name: str):
    """Limit shared by every route in the `name` group, counted per client address."""
    return limiter.shared_limit(lambda: _rate_limits[name], scope=name)


async def read_payload(request: Request, list_fields=(), file_fields=()) -> Tuple[dict, dict]:
    """
    Read a JSON or multipart body into (fields, files).

    Repeated form keys (or `key[]`) named in `list_fields` collect into lists.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            raise ValidationError(["Netinkamas JSON formatas"])
        if not isinstance(body, dict):
            raise ValidationError(["Netinkamas užklausos formatas"])
        return body, {}

    form = await request.form()
    fields, files = {}, {}
    for key, value in form.multi_items():
        if isinstance(value, UploadFile):
            if key in file_fields and value.filename:
                files[key] = IncomingFile(value.filename, value.content_type or "", await value.read())
            continue
        name = key[:-2] if key.endswith("[]") else key
        if name in list_fields:
            fields.setdefault(name, []).append(value)
        else:
            fields[name] = value
    return fields, files


# ---------------------- Health ----------------------
@router.get("/")
def read_root():
    return {"message": "Šaukštas Meilės API running"}


# ---------------------- Public recipes ----------------------
@router.get("/recipes")
def list_recipes(
    page: int = Query(1, ge=1, le=MAX_PAGE),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    category: Optional[str] = None,
    popular: bool = False,
    recipes: RecipeService = Depends(get_recipes),
):
    result = recipes.list_recipes(RecipeFilter(page=page, limit=limit, category=category, popular=popular))
    return {"success": True, "data": result.items, "meta": result.meta}


@router.get("/recipes/{recipe_id}")
def get_recipe(recipe_id: str, recipes: RecipeService = Depends(get_recipes)):
    page = recipes.get_recipe_page(recipe_id)
    return {"success": True, "data": page["recipe"], "comments": page["comments"]}


@router.get("/categories")
def list_categories(recipes: RecipeService = Depends(get_recipes)):
    return {"success": True, "data": recipes.list_categories()}


@router.get("/api/about")
def get_about(about: AboutService = Depends(get_about_service)):
    return {"success": True, "data": about.get_about()}


# ---------------------- Comments ----------------------
@router.get("/recipes/{recipe_id}/comments")
def list_comments(recipe_id: str, recipes: RecipeService = Depends(get_recipes)):
    return {"success": True, "data": recipes.list_comments(recipe_id)}


@router.post("/recipes/{recipe_id}/comments")
@rate_limit("api")
def add_comment(recipe_id: str, payload: CommentCreate, request: Request, recipes: RecipeService = Depends(get_recipes)):
    comment = recipes.add_comment(recipe_id, payload.model_dump())
    return {"success": True, "data": comment, "message": "Komentaras gautas ir bus paskelbtas po peržiūros."}


# ---------------------- Newsletter (public) ----------------------
@router.post("/api/newsletter/subscribe")
@rate_limit("api")
def subscribe(payload: SubscribeRequest, request: Request, subscribers: SubscriberService = Depends(get_subscribers)):
    return subscribers.subscribe(payload.email)


@router.get("/api/newsletter/unsubscribe")
@rate_limit("api")
def unsubscribe(
    request: Request,
    email: str = "",
    token: str = "",
    subscribers: SubscriberService = Depends(get_subscribers),
    auth: AuthGate = Depends(get_auth),
):
    if not auth.verify_unsubscribe_token(email, token):
        raise Forbidden("Netinkama prenumeratos atsisakymo nuoroda")
    return subscribers.unsubscribe(email)


# ---------------------- Media ----------------------
@router.get("/media/{category}/{filename}")
def get_media(category: str, filename: str, request: Request):
    path = request.app.state.media.resolve(category, filename)
    if not path or not os.path.isfile(path):
        raise NotFound("Failas nerastas")
    return FileResponse(path, headers={"Cache-Control": "public, max-age=86400"})


# ---------------------- Auth routes ----------------------
@router.post("/auth/setup")
@rate_limit("auth")
def setup_admin(payload: AdminSetupRequest, request: Request, auth: AuthGate = Depends(get_auth)):
    user = auth.setup_admin(payload.setup_key, payload.username, payload.email, payload.password)
    return {"success": True, "user": user}


@router.post("/auth/login")
@rate_limit("auth")
def login(payload: LoginRequest, request: Request, auth: AuthGate = Depends(get_auth)):
    result = auth.login(payload.username or payload.email, payload.password)
    return {"success": True, "token": result["token"], "user": result["user"]}


@router.get("/auth/verify")
def verify(admin: dict = Depends(get_current_admin)):
    return {"success": True, "user": admin}


# ---------------------- Admin: dashboard & recipes ----------------------
@router.get("/admin/dashboard/stats")
def dashboard_stats(admin: dict = Depends(get_current_admin), recipes: RecipeService = Depends(get_recipes)):
    return {"success": True, "data": recipes.dashboard_stats()}


@router.get("/admin/recipes")
def admin_list_recipes(
    page: int = Query(1, ge=1, le=MAX_PAGE),
    status: str = "all",
    admin: dict = Depends(get_current_admin),
    recipes: RecipeService = Depends(get_recipes),
):
    result = recipes.admin_list_recipes(page, status)
    return {"success": True, "data": result.items, "meta": result.meta}


@router.get("/admin/recipes/{recipe_id}")
def admin_get_recipe(recipe_id: str, admin: dict = Depends(get_current_admin),
                     recipes: RecipeService = Depends(get_recipes)):
    return {"success": True, "data": recipes.get_recipe(recipe_id)}


@router.post("/admin/recipes")
@rate_limit("upload")
async def create_recipe(request: Request, admin: dict = Depends(get_current_admin),
                        recipes: RecipeService = Depends(get_recipes)):
    fields, files = await read_payload(request, RECIPE_LIST_FIELDS, ("image",))
    recipe = recipes.create_recipe(fields, files.get("image"))
    return {"success": True, "data": recipe, "message": "Receptas sukurtas"}


@router.put("/admin/recipes/{recipe_id}")
@rate_limit("upload")
async def update_recipe(recipe_id: str, request: Request, admin: dict = Depends(get_current_admin),
                        recipes: RecipeService = Depends(get_recipes)):
    fields, files = await read_payload(request, RECIPE_LIST_FIELDS, ("image",))
    recipe = recipes.update_recipe(recipe_id, fields, files.get("image"))
    return {"success": True, "data": recipe, "message": "Receptas atnaujintas"}


@router.delete("/admin/recipes/{recipe_id}")
def delete_recipe(recipe_id: str, admin: dict = Depends(get_current_admin),
                  recipes: RecipeService = Depends(get_recipes)):
    recipes.delete_recipe(recipe_id)
    return {"success": True, "message": "Receptas ištrintas"}


@router.post("/admin/rebuild-categories")
def rebuild_categories(admin: dict = Depends(get_current_admin), recipes: RecipeService = Depends(get_recipes)):
    return {"success": True, "data": recipes.refresh_categories()}


# ---------------------- Admin: comments ----------------------
@router.get("/admin/comments")
def admin_list_comments(status: Optional[str] = None, admin: dict = Depends(get_current_admin),
                        recipes: RecipeService = Depends(get_recipes)):
    return {"success": True, "data": recipes.admin_list_comments(status)}


@router.get("/admin/recipes/{recipe_id}/comments")
def admin_recipe_comments(recipe_id: str, admin: dict = Depends(get_current_admin),
                          recipes: RecipeService = Depends(get_recipes)):
    return {"success": True, "data": recipes.list_comments(recipe_id, include_pending=True, public=False)}


@router.put("/admin/recipes/{recipe_id}/comments/{comment_id}/approve")
def approve_comment(recipe_id: str, comment_id: str, admin: dict = Depends(get_current_admin),
                    recipes: RecipeService = Depends(get_recipes)):
    return {"success": True, "data": recipes.approve_comment(recipe_id, comment_id)}


@router.delete("/admin/recipes/{recipe_id}/comments/{comment_id}")
def delete_comment(recipe_id: str, comment_id: str, admin: dict = Depends(get_current_admin),
                   recipes: RecipeService = Depends(get_recipes)):
    recipes.delete_comment(recipe_id, comment_id)
    return {"success": True, "message": "Komentaras ištrintas"}


# ---------------------- Admin: about ----------------------
@router.get("/admin/about")
def admin_get_about(admin: dict = Depends(get_current_admin), about: AboutService = Depends(get_about_service)):
    return {"success": True, "data": about.get_about()}


@router.put("/admin/about")
@rate_limit("upload")
async def admin_save_about(request: Request, admin: dict = Depends(get_current_admin),
                           about: AboutService = Depends(get_about_service)):
    fields, files = await read_payload(request, file_fields=("image", "sidebar_image"))
    page = about.save_about(fields, files.get("image"), files.get("sidebar_image"))
    return {"success": True, "data": page, "message": "Puslapis atnaujintas"}


# ---------------------- Admin: newsletter ----------------------
@router.get("/admin/newsletter/subscribers")
def admin_list_subscribers(include_inactive: bool = False, admin: dict = Depends(get_current_admin),
                           subscribers: SubscriberService = Depends(get_subscribers)):
    data = subscribers.list_subscribers(active_only=not include_inactive)
    return {"success": True, "data": data, "total": len(data)}


@router.delete("/admin/newsletter/subscribers/{email}")
def admin_remove_subscriber(email: str, admin: dict = Depends(get_current_admin),
                            subscribers: SubscriberService = Depends(get_subscribers)):
    subscribers.remove_subscriber(email)
    return {"success": True, "message": "Prenumeratorius pašalintas"}


@router.post("/admin/newsletter/import")
def admin_import_subscribers(payload: SubscriberImport, admin: dict = Depends(get_current_admin),
                             subscribers: SubscriberService = Depends(get_subscribers)):
    return {"success": True, "data": subscribers.import_subscribers(payload.emails)}


@router.post("/admin/newsletter/send")
def admin_send_newsletter(payload: NewsletterSend, admin: dict = Depends(get_current_admin),
                          dispatcher: NewsletterDispatcher = Depends(get_dispatcher)):
    result = validate_newsletter(payload.model_dump())
    if not result.ok:
        raise ValidationError(result.errors)
    report = dispatcher.send(result.data["subject"], result.data["content"])
    return {
        "success": True,
        "message": f"Naujienlaiškis išsiųstas {report.success_count} iš {report.total_count} prenumeratorių",
        "data": {"success_count": report.success_count, "total_count": report.total_count, "failed": report.failed},
    }


@router.post("/admin/newsletter/test")
def admin_test_newsletter(payload: NewsletterTest, admin: dict = Depends(get_current_admin),
                          recipes: RecipeService = Depends(get_recipes),
                          dispatcher: NewsletterDispatcher = Depends(get_dispatcher)):
    if payload.recipe_id:
        recipe = recipes.get_recipe(payload.recipe_id)
    else:
        latest = recipes.list_recipes(RecipeFilter(limit=1)).items
        if not latest:
            raise NotFound("Nėra paskelbtų receptų")
        recipe = latest[0]
    dispatcher.send_test(payload.email, recipe)
    return {"success": True, "message": "Bandomasis laiškas išsiųstas"}


# ---------------------- Error handlers ----------------------
async def handle_api_error(request: Request, exc: ApiError):
    if isinstance(exc, UpstreamFailure):
        logger.error(f"Upstream failure on {request.method} {request.url.path}: {exc.detail}")
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=exc.headers)


async def handle_http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"success": False, "error": str(exc.detail)}, status_code=exc.status_code,
                        headers=getattr(exc, "headers", None))


async def handle_rate_limited(request: Request, exc: RateLimitExceeded):
    logger.warning(f"Rate limit {exc.detail} hit by {get_remote_address(request)} on {request.url.path}")
    retry_after = exc.limit.limit.get_expiry()
    window = getattr(request.state, "view_rate_limit", None)
    if window:
        reset_time, _ = request.app.state.limiter.limiter.get_window_stats(window[0], *window[1])
        retry_after = reset_time - time.time()
    error = RateLimited(retry_after=math.ceil(retry_after))
    return JSONResponse(error.to_dict(), status_code=error.status_code, headers=error.headers)


async def handle_request_validation(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        errors.append(f"{location}: {err.get('msg')}" if location else err.get("msg"))
    body = {"success": False, "error": errors[0] if len(errors) == 1 else "Neteisingi duomenys", "errors": errors}
    return JSONResponse(body, status_code=400)


async def handle_unexpected(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
    return JSONResponse({"success": False, "error": "Vidinė serverio klaida"}, status_code=500)


# ---------------------- App factory ----------------------
def create_app(app_config=None, mongo_client=None, mailer=None, clock=None, sleep=time.sleep) -> FastAPI:
    """
    Build the application. Tests pass a mongomock client, a recording mailer
    and a fake clock; production uses the configured MongoDB and SMTP.
    """
    app_config = app_config or settings
    db = database.init_db(mongo_client, app_config.DATABASE_NAME, app_config.DATABASE_URL)

    media = MediaStore(app_config.UPLOAD_DIR, app_config.MEDIA_BASE_URL)
    guard = LoginGuard(app_config.MAX_LOGIN_ATTEMPTS, app_config.LOCKOUT_MINUTES * 60,
                       **({"clock": clock} if clock else {}))
    auth = AuthGate(app_config, guard, db)
    subscribers = SubscriberService(db)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app_config.init_app()
        subscribers.ensure_indexes()
        db["adminuser"].create_index("username", unique=True)
        db["comment"].create_index("recipe_id")
        counts = app.state.recipes.refresh_categories()
        logger.info(f"Started ({app_config.ENV}), {len(counts)} categories in view")
        yield

    app = FastAPI(title="Šaukštas Meilės API", lifespan=lifespan)
    app.state.config = app_config
    app.state.media = media
    app.state.recipes = RecipeService(db, media)
    app.state.about = AboutService(db, media)
    app.state.subscribers = subscribers
    app.state.auth = auth
    app.state.dispatcher = NewsletterDispatcher(
        subscribers,
        mailer or Mailer.from_config(app_config),
        app_config.SITE_URL,
        auth.unsubscribe_token,
        delay=app_config.NEWSLETTER_SEND_DELAY,
        sleep=sleep,
    )
    _rate_limits.update(app_config.RATE_LIMITS)
    limiter.reset()
    app.state.limiter = limiter

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_config.CORS_ORIGINS,
        allow_credentials="*" not in app_config.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response

    app.add_exception_handler(ApiError, handle_api_error)
    app.add_exception_handler(RateLimitExceeded, handle_rate_limited)
    app.add_exception_handler(StarletteHTTPException, handle_http_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(Exception, handle_unexpected)

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
