from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional, Tuple
from urllib.parse import parse_qs, urlencode
import logging
import pathlib

from robyn import Request, Response, Robyn
import jinja2

from accounts import normalize_username, validate_profile_fields
from auth import (
    CSRF_COOKIE_NAME,
    CSRF_HEADER_NAME,
    SESSION_COOKIE_NAME,
    cookie_clear_settings,
    cookie_settings,
    csrf_cookie_settings,
    generate_csrf_token,
    verify_csrf_token,
)
from config import load_settings
from context import AppContext
from database import AccountRecord
from errors import AppError, Conflict, InternalError, InvalidInput, NotFound, Unauthorized
from models import GalleryCategory, Role, format_price

# Author: Daniel Neugent

settings = load_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = Robyn(__file__)

current_file_path = pathlib.Path(__file__).parent.resolve()

templates = jinja2.Environment(
    loader=jinja2.FileSystemLoader(str(current_file_path / "frontend" / "pages")),
    autoescape=jinja2.select_autoescape(["html"]),
)

CSRF_FAILED_MESSAGE = "Weryfikacja CSRF nie powiodła się. Spróbuj ponownie."


def _price_label(price: Any) -> str:
    if price is None:
        return "Darmowa"
    return f"{format_price(price)} PLN"


templates.filters["price"] = _price_label
templates.filters["price_value"] = format_price

# Services shared by every request
context = AppContext.from_settings(settings)
context.store.ensure_root()
app.serve_directory(
    route=settings.upload_url_prefix,
    directory_path=str(settings.upload_dir),
)


async def _startup() -> None:
    await context.startup()


async def _shutdown() -> None:
    await context.shutdown()


app.startup_handler(_startup)
app.shutdown_handler(_shutdown)


@dataclass
class AuthContext:
    account: Optional[AccountRecord]
    clear_cookie: bool


def _get_cookie_value(request: Request, name: str) -> Optional[str]:
    """Extract a single cookie value from the request headers."""
    cookie_header = request.headers.get("cookie")
    if not cookie_header:
        return None
    for chunk in cookie_header.split(";"):
        key, sep, value = chunk.strip().partition("=")
        if not sep:
            continue
        if key.strip() == name:
            return value
    return None


def _raw_body_bytes(request: Request) -> bytes:
    raw_body = request.body
    if isinstance(raw_body, (bytes, bytearray)):
        return bytes(raw_body)
    if isinstance(raw_body, list):
        return bytes(raw_body)
    if isinstance(raw_body, str):
        return raw_body.encode("utf-8")
    return b""


def _form_data(request: Request) -> dict[str, str]:
    """Return form fields, including urlencoded fallback parsing."""
    native = request.form_data or {}
    if native:
        return {str(k): str(v) for k, v in native.items()}
    content_type = (request.headers.get("content-type") or "").lower()
    if "application/x-www-form-urlencoded" not in content_type:
        return {}
    parsed = parse_qs(
        _raw_body_bytes(request).decode("utf-8", errors="replace"),
        keep_blank_values=True,
    )
    return {key: values[0] if values else "" for key, values in parsed.items()}


def _uploaded_file(request: Request) -> Tuple[Optional[str], bytes]:
    """Return (original filename, bytes) of the first non-empty uploaded file."""
    files = getattr(request, "files", None) or {}
    for filename, payload in files.items():
        if isinstance(payload, list):
            payload = bytes(payload)
        elif isinstance(payload, str):
            payload = payload.encode("utf-8")
        if payload:
            return str(filename), bytes(payload)
    return None, b""


def _path_param(request: Request, name: str) -> str:
    return str(request.path_params.get(name) or "").strip()


def _robyn_cookie_kwargs(options: dict[str, Any]) -> dict[str, Any]:
    # Robyn's Response.set_cookie spells these keywords http_only / same_site.
    renamed = {"httponly": "http_only", "samesite": "same_site"}
    return {renamed.get(key, key): value for key, value in options.items()}


def _set_csrf_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        CSRF_COOKIE_NAME,
        token,
        **_robyn_cookie_kwargs(csrf_cookie_settings(secure=settings.secure_cookies)),
    )


def _set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        **_robyn_cookie_kwargs(
            cookie_settings(
                secure=settings.secure_cookies, max_age=settings.session_idle_seconds
            )
        ),
    )


def _clear_session_cookie(response: Response) -> None:
    response.set_cookie(
        SESSION_COOKIE_NAME,
        "",
        **_robyn_cookie_kwargs(cookie_clear_settings(secure=settings.secure_cookies)),
    )


def _get_or_create_csrf_token(request: Request) -> Tuple[str, bool]:
    token = _get_cookie_value(request, CSRF_COOKIE_NAME)
    if token:
        return token, False
    return generate_csrf_token(), True


def _csrf_valid(request: Request, form: dict[str, str]) -> bool:
    submitted = form.get("csrf_token") or request.headers.get(CSRF_HEADER_NAME)
    return verify_csrf_token(_get_cookie_value(request, CSRF_COOKIE_NAME), submitted)


def _require_csrf(request: Request, form: dict[str, str]) -> None:
    if not _csrf_valid(request, form):
        logger.warning("csrf rejected path=%s", request.url.path)
        raise InvalidInput(CSRF_FAILED_MESSAGE)


def _html_response(body: str, *, status: int = 200) -> Response:
    return Response(
        status_code=status,
        headers={"content-type": "text/html; charset=utf-8"},
        description=body,
    )


def _redirect(location: str) -> Response:
    """Send a 303 redirect to the user agent."""
    return Response(
        status_code=303,
        headers={"location": location},
        description="",
    )


def _redirect_with_next(path: str, *, query: Optional[str] = None) -> Response:
    dest = path
    if query:
        dest = f"{path}?{query}"
    return _redirect(dest)


def _normalize_redirect_path(raw: Optional[str], default: str = "/panel") -> str:
    """Only local absolute paths are allowed as redirect targets."""
    candidate = (raw or "").strip()
    if not candidate.startswith("/") or candidate.startswith("//"):
        return default
    return candidate


def _render(template_name: str, **values: Any) -> str:
    return templates.get_template(template_name).render(**values)


def _page(
    request: Request,
    auth: AuthContext,
    template_name: str,
    *,
    status: int = 200,
    **values: Any,
) -> Response:
    """Render a full page with the shared CSRF and session cookie handling."""
    csrf_token, set_csrf = _get_or_create_csrf_token(request)
    response = _html_response(
        _render(
            template_name,
            current_account=auth.account,
            csrf_token=csrf_token,
            **values,
        ),
        status=status,
    )
    if auth.clear_cookie:
        _clear_session_cookie(response)
    if set_csrf:
        _set_csrf_cookie(response, csrf_token)
    return response


def _info_page(
    title: str,
    message: str,
    *,
    status: int = 200,
    link: Optional[Tuple[str, str]] = None,
) -> Response:
    return _html_response(
        _render(
            "info/Info.html",
            title=title,
            message=message,
            link=link,
            current_account=None,
            csrf_token=None,
        ),
        status=status,
    )


@app.exception
def handle_exception(error: Exception) -> Response:
    """Map domain errors to their status; hide everything else behind a 500."""
    if not isinstance(error, AppError):
        logger.error("unhandled error: %r", error, exc_info=error)
        error = InternalError()
    elif isinstance(error, InternalError):
        logger.error("internal error: %s", error.message, exc_info=error)
    message = error.message
    if isinstance(error, InternalError):
        # Storage and I/O details stay in the log.
        message = InternalError.public_message
    link = ("/", "Wróć na stronę główną")
    if isinstance(error, Unauthorized):
        link = ("/login", "Przejdź do logowania")
    return _info_page("Błąd", message, status=error.status_code, link=link)


async def _get_auth_context(request: Request) -> AuthContext:
    """Resolve the current account from the session cookie, if present."""
    token = _get_cookie_value(request, SESSION_COOKIE_NAME)
    if not token:
        return AuthContext(account=None, clear_cookie=False)
    account_id = await context.sessions.resolve(token)
    if account_id is None:
        return AuthContext(account=None, clear_cookie=True)
    account = await context.directory.find_by_id(account_id)
    if account is None:
        return AuthContext(account=None, clear_cookie=True)
    return AuthContext(account=account, clear_cookie=False)


async def _ensure_authenticated(request: Request) -> Response | AuthContext:
    """Return the authenticated context or issue a login redirect if missing."""
    auth = await _get_auth_context(request)
    if auth.account:
        return auth
    target = _normalize_redirect_path(request.url.path)
    response = _redirect_with_next("/login", query=urlencode({"next": target}))
    if auth.clear_cookie:
        _clear_session_cookie(response)
    return response


# Public pages


@app.get("/")
async def home(request: Request) -> Response:
    """Grid of creators, online ones first."""
    auth = await _get_auth_context(request)
    creators = await context.directory.list_public()
    return _page(request, auth, "home/Home.html", title="Strona Główna", creators=creators)


@app.get("/erika/:username")
async def erika_profile(request: Request) -> Response:
    auth = await _get_auth_context(request)
    erika = await context.directory.find_by_username(_path_param(request, "username"))
    if erika is None:
        raise NotFound()
    galleries = await context.galleries.list_galleries(erika.id)
    return _page(
        request,
        auth,
        "profile/Profile.html",
        title=erika.username,
        erika=erika,
        galleries=galleries,
    )


@app.get("/pay/gallery/:gallery_id")
async def initiate_gallery_payment(request: Request) -> Response:
    """Payment confirmation page. No gateway is contacted."""
    auth = await _get_auth_context(request)
    gallery = await context.galleries.get_public_gallery(_path_param(request, "gallery_id"))
    owner = await context.directory.find_by_id(gallery.account_id)
    logger.info("payment page shown gallery_id=%s", gallery.id)
    return _page(
        request,
        auth,
        "pay/Pay.html",
        title="Potwierdzenie płatności",
        gallery=gallery,
        owner=owner,
    )


# Registration and login


@app.get("/register")
async def register_get(request: Request) -> Response:
    auth = await _get_auth_context(request)
    if auth.account:
        return _redirect("/panel")
    return _page(request, auth, "register/Register.html", title="Rejestracja", values={})


@app.post("/register")
async def register_post(request: Request) -> Response:
    """Validate the form and create a Member account."""
    auth = await _get_auth_context(request)
    form = _form_data(request)
    username = normalize_username(form.get("username"))
    email = (form.get("email") or "").strip()
    password = form.get("password") or ""
    values = {"username": username, "email": email}
    if not _csrf_valid(request, form):
        return _page(
            request,
            auth,
            "register/Register.html",
            status=400,
            title="Rejestracja",
            values=values,
            errors=[CSRF_FAILED_MESSAGE],
        )
    try:
        await context.directory.create(username, email, password)
    except (InvalidInput, Conflict) as exc:
        return _page(
            request,
            auth,
            "register/Register.html",
            status=exc.status_code,
            title="Rejestracja",
            values=values,
            errors=[exc.message],
        )
    return _redirect_with_next("/login", query=urlencode({"registered": "1"}))


@app.get("/login")
async def login_get(request: Request) -> Response:
    auth = await _get_auth_context(request)
    if auth.account:
        return _redirect("/panel")
    next_path = _normalize_redirect_path(request.query_params.get("next", None))
    messages: list[str] = []
    if request.query_params.get("registered", None) == "1":
        messages.append("Konto utworzone. Możesz się zalogować.")
    return _page(
        request,
        auth,
        "login/Login.html",
        title="Logowanie",
        next_path=next_path,
        messages=messages,
    )


@app.post("/login")
async def login_post(request: Request) -> Response:
    """Check credentials and bind a new session to the browser."""
    auth = await _get_auth_context(request)
    form = _form_data(request)
    next_path = _normalize_redirect_path(form.get("next"))
    if not _csrf_valid(request, form):
        return _page(
            request,
            auth,
            "login/Login.html",
            status=400,
            title="Logowanie",
            next_path=next_path,
            errors=[CSRF_FAILED_MESSAGE],
        )
    try:
        session_token, _ = await context.sessions.login(
            form.get("username") or "",
            form.get("password") or "",
            user_agent=request.headers.get("user-agent"),
            ip_address=getattr(request, "ip_addr", None)
            or request.headers.get("x-forwarded-for"),
            previous_token=_get_cookie_value(request, SESSION_COOKIE_NAME),
        )
    except Unauthorized as exc:
        return _page(
            request,
            auth,
            "login/Login.html",
            status=exc.status_code,
            title="Logowanie",
            next_path=next_path,
            errors=[exc.message],
        )
    response = _redirect(next_path)
    _set_session_cookie(response, session_token.token)
    _set_csrf_cookie(response, generate_csrf_token())
    return response


@app.post("/logout")
async def logout(request: Request) -> Response:
    """Revoke the session and return to the public landing page."""
    form = _form_data(request)
    response = _redirect("/")
    if _csrf_valid(request, form):
        await context.sessions.logout(_get_cookie_value(request, SESSION_COOKIE_NAME))
        logger.info("logout completed")
    _clear_session_cookie(response)
    return response


# Creator panel


@app.get("/panel")
async def erika_panel(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    return _page(request, auth, "panel/Panel.html", title="Panel Eriki", erika=auth.account)


@app.post("/panel")
async def update_erika_profile(request: Request) -> Response:
    """Multipart profile edit; a new avatar is stored only when a file is sent."""
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    account = auth.account
    form = _form_data(request)
    _require_csrf(request, form)
    username = normalize_username(form.get("username"))
    email = (form.get("email") or "").strip()
    try:
        validate_profile_fields(username, email)
        filename, data = _uploaded_file(request)
        avatar_url = await context.galleries.save_avatar(account.id, data, filename)
        await context.directory.update_profile(
            account.id, username, email, form.get("bio"), avatar_url
        )
    except (InvalidInput, Conflict) as exc:
        return _page(
            request,
            auth,
            "panel/Panel.html",
            status=exc.status_code,
            title="Panel Eriki",
            erika=account,
            errors=[exc.message],
        )
    return _redirect("/panel")


@app.post("/panel/status-toggle")
async def toggle_online_status(request: Request) -> Response:
    """htmx endpoint returning the refreshed status button."""
    auth = await _get_auth_context(request)
    if auth.account is None:
        raise Unauthorized()
    _require_csrf(request, _form_data(request))
    is_online = await context.directory.toggle_online(auth.account.id)
    return _html_response(_render("panel/StatusButton.html", is_online=is_online))


@app.get("/panel/stream")
async def show_stream_panel(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    return _page(request, auth, "panel/Stream.html", title="Panel Kamerki")


# Galleries


@app.get("/panel/galleries")
async def show_galleries_page(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    galleries = await context.galleries.list_galleries(auth.account.id)
    return _page(
        request,
        auth,
        "galleries/Galleries.html",
        title="Zarządzanie Galeriami",
        galleries=galleries,
        categories=list(GalleryCategory),
    )


@app.post("/panel/galleries")
async def create_gallery(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    form = _form_data(request)
    _require_csrf(request, form)
    try:
        await context.galleries.create_gallery(auth.account.id, form.get("category"))
    except InvalidInput as exc:
        galleries = await context.galleries.list_galleries(auth.account.id)
        return _page(
            request,
            auth,
            "galleries/Galleries.html",
            status=exc.status_code,
            title="Zarządzanie Galeriami",
            galleries=galleries,
            categories=list(GalleryCategory),
            errors=[exc.message],
        )
    return _redirect("/panel/galleries")


@app.get("/panel/galleries/:gallery_id")
async def show_single_gallery_page(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    gallery, photos = await context.galleries.get_managed_gallery(
        auth.account.id, _path_param(request, "gallery_id")
    )
    return _page(
        request,
        auth,
        "galleries/Gallery.html",
        title="Zarządzanie Galerią",
        gallery=gallery,
        photos=photos,
        categories=list(GalleryCategory),
    )


@app.post("/panel/galleries/:gallery_id")
async def update_gallery(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    gallery_id = _path_param(request, "gallery_id")
    form = _form_data(request)
    _require_csrf(request, form)
    try:
        await context.galleries.update_gallery_details(
            auth.account.id,
            gallery_id,
            form.get("category"),
            form.get("description"),
            form.get("price_pln"),
        )
    except InvalidInput as exc:
        gallery, photos = await context.galleries.get_managed_gallery(
            auth.account.id, gallery_id
        )
        return _page(
            request,
            auth,
            "galleries/Gallery.html",
            status=exc.status_code,
            title="Zarządzanie Galerią",
            gallery=gallery,
            photos=photos,
            categories=list(GalleryCategory),
            errors=[exc.message],
        )
    return _redirect(f"/panel/galleries/{gallery_id}")


@app.post("/panel/galleries/:gallery_id/upload")
async def upload_photo(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    gallery_id = _path_param(request, "gallery_id")
    _require_csrf(request, _form_data(request))
    filename, data = _uploaded_file(request)
    await context.galleries.upload_photo(auth.account.id, gallery_id, data, filename)
    return _redirect(f"/panel/galleries/{gallery_id}")


@app.get("/panel/photo/delete-confirm/:gallery_id/:photo_id")
async def confirm_delete_photo(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    gallery, _ = await context.galleries.get_managed_gallery(
        auth.account.id, _path_param(request, "gallery_id")
    )
    photo = await context.authorizer.require_photo_in_gallery(
        _path_param(request, "photo_id"), gallery.id
    )
    return _page(
        request,
        auth,
        "galleries/ConfirmDelete.html",
        title="Usuń zdjęcie",
        gallery=gallery,
        photo=photo,
    )


@app.post("/panel/galleries/:gallery_id/photo/:photo_id/delete")
async def delete_photo(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    gallery_id = _path_param(request, "gallery_id")
    _require_csrf(request, _form_data(request))
    await context.galleries.delete_photo(
        _path_param(request, "photo_id"), gallery_id, auth.account.id
    )
    return _redirect(f"/panel/galleries/{gallery_id}")


# Administration


@app.get("/admin")
async def admin_dashboard(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    erikas = await context.administration.list_accounts(auth.account.id)
    return _page(request, auth, "admin/Dashboard.html", title="Admin", erikas=erikas)


async def _admin_edit_page(
    request: Request,
    auth: AuthContext,
    *,
    status: int = 200,
    errors: Iterable[str] = (),
) -> Response:
    erika, galleries = await context.administration.get_account(
        auth.account.id, _path_param(request, "account_id")
    )
    return _page(
        request,
        auth,
        "admin/EditErika.html",
        status=status,
        title="Edytuj Erikę",
        erika=erika,
        galleries=galleries,
        roles=list(Role),
        errors=list(errors),
    )


@app.get("/admin/erika/:account_id")
async def show_edit_erika_form(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    return await _admin_edit_page(request, auth)


@app.post("/admin/erika/:account_id")
async def update_erika_by_admin(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    form = _form_data(request)
    _require_csrf(request, form)
    try:
        await context.administration.update_profile(
            auth.account.id,
            _path_param(request, "account_id"),
            form.get("username") or "",
            form.get("email") or "",
            form.get("bio"),
        )
    except (InvalidInput, Conflict) as exc:
        return await _admin_edit_page(
            request, auth, status=exc.status_code, errors=[exc.message]
        )
    return _redirect("/admin")


@app.post("/admin/erika/:account_id/approve")
async def approve_erika(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    _require_csrf(request, _form_data(request))
    await context.administration.approve(auth.account.id, _path_param(request, "account_id"))
    return _redirect("/admin")


@app.post("/admin/erika/:account_id/role")
async def change_erika_role(request: Request) -> Response:
    auth = await _ensure_authenticated(request)
    if isinstance(auth, Response):
        return auth
    form = _form_data(request)
    _require_csrf(request, form)
    account_id = _path_param(request, "account_id")
    await context.administration.set_role(auth.account.id, account_id, form.get("role"))
    return _redirect(f"/admin/erika/{account_id}")


if __name__ == "__main__":
    app.start(host=settings.host, port=settings.port, _check_port=False)
