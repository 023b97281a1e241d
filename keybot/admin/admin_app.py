import hmac
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request, Form
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from itsdangerous import BadSignature, URLSafeSerializer
from sqlalchemy.orm import Session
from ..db import SessionLocal, init_db
from ..errors import GiveawayError, NoActiveRound, NotFound
from ..keys import add_keys, key_stats, recent_claims
from ..rounds import current_round, end_round, list_rounds, start_round
from ..settings import Settings, load_settings

log = logging.getLogger(__name__)

# Load .env reliably both locally and on server
BASE_DIR = Path(__file__).resolve().parents[2]  # project root
ENV_PATH = BASE_DIR / ".env"
load_dotenv(ENV_PATH if ENV_PATH.exists() else None)

templates = Jinja2Templates(directory=str(Path(__file__).resolve().parent / "templates"))

ADMIN_LOGIN = os.getenv("ADMIN_LOGIN", "admin")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin12345")
SECRET = os.getenv("ADMIN_SECRET", "supersecret")
serializer = URLSafeSerializer(SECRET, salt="keybot-admin")


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(lifespan=lifespan)


def get_db():
    with SessionLocal() as db:
        yield db

def get_settings(request: Request, db: Session = Depends(get_db)) -> Settings:
    # loaded once per process
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        settings = load_settings(db)
        request.app.state.settings = settings
    return settings

def is_authed(request: Request) -> bool:
    cookie = request.cookies.get("session", "")
    if not cookie:
        return False
    try:
        data = serializer.loads(cookie)
    except BadSignature:
        return False
    return isinstance(data, dict) and data.get("u") == ADMIN_LOGIN

def render_dashboard(request: Request, db: Session, err: str = "", msg: str = "", status_code: int = 200):
    try:
        active = current_round(db)
    except NoActiveRound:
        active = None
    return templates.TemplateResponse(
        request,
        "dashboard.html",
        {
            "stats": key_stats(db),
            "active": active,
            "rounds": list_rounds(db, limit=20),
            "claims": recent_claims(db, limit=20),
            "err": err,
            "msg": msg,
        },
        status_code=status_code,
    )

@app.get("/", response_class=HTMLResponse)
def root(request: Request, db: Session = Depends(get_db)):
    if not is_authed(request):
        return RedirectResponse("/login", status_code=302)
    return render_dashboard(request, db)

@app.get("/login", response_class=HTMLResponse)
def login_page(request: Request):
    return templates.TemplateResponse(request, "login.html", {"err": ""})

@app.post("/login")
def login(request: Request, username: str = Form(...), password: str = Form(...)):
    # single admin account from .env
    if hmac.compare_digest(username.encode(), ADMIN_LOGIN.encode()) and hmac.compare_digest(password.encode(), ADMIN_PASSWORD.encode()):
        cookie = serializer.dumps({"u": username})
        resp = RedirectResponse("/", status_code=302)
        resp.set_cookie("session", cookie, httponly=True)
        return resp
    log.warning("Failed admin login for %r", username)
    return templates.TemplateResponse(request, "login.html", {"err": "Wrong login or password"}, status_code=401)

@app.post("/logout")
def logout():
    resp = RedirectResponse("/login", status_code=302)
    resp.delete_cookie("session")
    return resp

@app.post("/rounds/start")
def rounds_start(
        request: Request,
        duration: str = Form(""),
        db: Session = Depends(get_db),
        settings: Settings = Depends(get_settings),
):
    if not is_authed(request):
        return RedirectResponse("/login", status_code=302)
    txt = duration.strip()
    if txt and not txt.isdigit():
        return render_dashboard(request, db, err="Duration must be a number of seconds", status_code=400)
    try:
        rnd = start_round(db, settings, int(txt) if txt else None)
    except ValueError as e:
        return render_dashboard(request, db, err=str(e), status_code=400)
    except GiveawayError as e:
        return render_dashboard(request, db, err=str(e), status_code=409)
    log.info("Round %s started from admin panel", rnd.round_id)
    return RedirectResponse("/", status_code=302)

@app.post("/rounds/{round_id}/end")
def rounds_end(request: Request, round_id: int, db: Session = Depends(get_db)):
    if not is_authed(request):
        return RedirectResponse("/login", status_code=302)
    try:
        end_round(db, round_id)
    except NotFound as e:
        return render_dashboard(request, db, err=str(e), status_code=404)
    except GiveawayError as e:
        return render_dashboard(request, db, err=str(e), status_code=409)
    return RedirectResponse("/", status_code=302)

@app.post("/keys")
def keys_upload(request: Request, keys: str = Form(""), db: Session = Depends(get_db)):
    if not is_authed(request):
        return RedirectResponse("/login", status_code=302)
    try:
        added = add_keys(db, keys.splitlines())
    except GiveawayError as e:
        return render_dashboard(request, db, err=str(e), status_code=500)
    return render_dashboard(request, db, msg=f"Added {added} new keys")
