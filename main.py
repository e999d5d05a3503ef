import logging
import os
import secrets
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    File,
    Form,
    HTTPException,
    Query,
    Request,
    Response,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, EmailStr, Field, TypeAdapter, ValidationError
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import assistant
import community
import content
import database
import settings
import storage
from auth import (
    OTP_TTL,
    PRIVATE_USER_FIELDS,
    RESET_TTL,
    get_current_user,
    get_verified_user,
    hash_password,
    hash_token,
    issue_otp,
    issue_reset_token,
    public_user,
    pwd_context,
    require_roles,
    token_response,
    verify_google_token,
    verify_password,
)
from content import KINDS, NOTE, PYQ_KIND, SYLLABUS, VIDEO, ContentKind, kind_for
from database import as_utc, clean, create_document, ensure_indexes, get_db, get_or_404, now, oid
from notifications import Dispatcher, truncate
from policy import can_change_role, can_delete_user, enforce
from realtime import hub
from schemas import (
    STAFF_ROLES,
    Announcement,
    Branch,
    Difficulty,
    ExamType,
    Priority,
    Profile,
    ReferenceBook,
    Semester,
    StudentProfile,
    Subject,
    TargetAudience,
    Unit,
    User,
    Year,
    profile_fields,
)
from visibility import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    announcement_visibility_filter,
    run_listing,
)

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def seed_admin(db: Database) -> None:
    if not settings.ADMIN_EMAIL or not settings.ADMIN_PASSWORD:
        return
    if db["user"].find_one({"email": settings.ADMIN_EMAIL}):
        return
    admin = User(
        name=settings.ADMIN_NAME,
        email=settings.ADMIN_EMAIL,
        password=hash_password(settings.ADMIN_PASSWORD),
        role="admin",
        is_verified=True,
    )
    create_document(db, "user", admin)
    logger.info("Created admin user %s", settings.ADMIN_EMAIL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_indexes(database.db)
        seed_admin(database.db)
    else:
        logger.warning("DATABASE_URL/DATABASE_NAME not set; requests needing the database will fail with 503")
    yield


app = FastAPI(title="Campus Content Hub API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.FRONTEND_ORIGINS,
    allow_credentials="*" not in settings.FRONTEND_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR, check_dir=False), name="uploads")


@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=422,
        content={"detail": exc.errors(include_url=False, include_context=False, include_input=False)},
    )


def get_dispatcher(background_tasks: BackgroundTasks, db: Database = Depends(get_db)) -> Dispatcher:
    return Dispatcher(db, background_tasks)


staff_only = require_roles(*STAFF_ROLES)
admin_only = require_roles("admin")


# ----------------------
# Auth
# ----------------------
def start_session(response: Response, user: dict) -> Dict[str, Any]:
    body = token_response(user)
    response.set_cookie(
        settings.COOKIE_NAME,
        body["token"],
        max_age=settings.JWT_EXPIRE_MINUTES * 60,
        httponly=True,
        samesite="lax",
    )
    return body


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = Field(None, pattern=r"^[0-9]{10}$")
    roll_number: Optional[str] = None
    profile: Profile


@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterRequest, response: Response, db: Database = Depends(get_db)):
    if not isinstance(payload.profile, StudentProfile):
        raise HTTPException(status_code=400, detail="Only students can register directly")
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=409, detail="Email already registered")

    user = User(
        name=payload.name,
        email=email,
        phone=payload.phone,
        roll_number=payload.roll_number,
        password=hash_password(payload.password),
        is_verified=False,
        **profile_fields(payload.profile),
    )
    otp, otp_hash = issue_otp()
    data = user.model_dump()
    data.update(otp=otp_hash, otp_expiry=now() + OTP_TTL)
    try:
        new_id = create_document(db, "user", data)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Email already registered")
    # No mail transport; the code goes to the log.
    logger.info("OTP for %s: %s", email, otp)
    return start_session(response, db["user"].find_one({"_id": new_id}))


class LoginRequest(BaseModel):
    email: EmailStr
    password: str
    fcm_token: Optional[str] = None


@app.post("/api/auth/login")
def login(payload: LoginRequest, response: Response, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if payload.fcm_token:
        db["user"].update_one({"_id": user["_id"]}, {"$set": {"fcm_token": payload.fcm_token}})
        user["fcm_token"] = payload.fcm_token
    return start_session(response, user)


class GoogleLoginRequest(BaseModel):
    id_token: str
    profile: Optional[StudentProfile] = None
    fcm_token: Optional[str] = None


@app.post("/api/auth/google")
def google_login(payload: GoogleLoginRequest, response: Response, db: Database = Depends(get_db)):
    info = verify_google_token(payload.id_token)
    user = db["user"].find_one({"$or": [{"email": info["email"]}, {"google_id": info["sub"]}]})
    if not user:
        if payload.profile is None:
            raise HTTPException(status_code=400, detail="Additional information required to complete registration")
        new_user = User(
            name=info["name"],
            email=info["email"],
            password=hash_password(secrets.token_hex(20)),
            google_id=info["sub"],
            avatar=info["picture"] or "default-avatar.png",
            is_verified=True,
            **profile_fields(payload.profile),
        )
        user = db["user"].find_one({"_id": create_document(db, "user", new_user)})
    elif not user.get("google_id"):
        db["user"].update_one({"_id": user["_id"]}, {"$set": {"google_id": info["sub"]}})
        user["google_id"] = info["sub"]

    if payload.fcm_token:
        db["user"].update_one({"_id": user["_id"]}, {"$set": {"fcm_token": payload.fcm_token}})
        user["fcm_token"] = payload.fcm_token
    return start_session(response, user)


class OTPRequest(BaseModel):
    otp: str = Field(..., min_length=6, max_length=6)


@app.post("/api/auth/verify-otp")
def verify_otp(payload: OTPRequest, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    expiry = as_utc(user.get("otp_expiry"))
    if not user.get("otp") or expiry is None or expiry < now():
        raise HTTPException(status_code=400, detail="OTP expired or invalid")
    if not pwd_context.verify(payload.otp, user["otp"]):
        raise HTTPException(status_code=400, detail="Invalid OTP")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"is_verified": True, "updated_at": now()}, "$unset": {"otp": "", "otp_expiry": ""}},
    )
    return {"message": "Account verified successfully"}


@app.post("/api/auth/resend-otp")
def resend_otp(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    otp, otp_hash = issue_otp()
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"otp": otp_hash, "otp_expiry": now() + OTP_TTL}})
    logger.info("New OTP for %s: %s", user["email"], otp)
    return {"message": "OTP sent successfully"}


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


@app.post("/api/auth/forgot-password")
def forgot_password(payload: ForgotPasswordRequest, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user:
        raise HTTPException(status_code=404, detail="No user found with that email")
    raw, hashed = issue_reset_token()
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"reset_password_token": hashed, "reset_password_expire": now() + RESET_TTL}},
    )
    logger.info("Reset URL for %s: %s/reset-password/%s", user["email"], settings.CLIENT_URL, raw)
    return {"message": "Password reset link sent to your email"}


class ResetPasswordRequest(BaseModel):
    password: str = Field(..., min_length=6)


@app.put("/api/auth/reset-password/{reset_token}")
def reset_password(reset_token: str, payload: ResetPasswordRequest, db: Database = Depends(get_db)):
    user = db["user"].find_one(
        {"reset_password_token": hash_token(reset_token), "reset_password_expire": {"$gt": now()}}
    )
    if not user:
        raise HTTPException(status_code=400, detail="Invalid or expired token")
    db["user"].update_one(
        {"_id": user["_id"]},
        {
            "$set": {"password": hash_password(payload.password), "updated_at": now()},
            "$unset": {"reset_password_token": "", "reset_password_expire": ""},
        },
    )
    return {"message": "Password reset successful"}


def user_with_subjects(db: Database, user: dict) -> dict:
    out = public_user(user)
    out["subjects"] = [clean(s) for s in db["subject"].find({"_id": {"$in": user.get("subjects", [])}})]
    return out


@app.get("/api/auth/me")
def me(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    return user_with_subjects(db, user)


class UpdateDetailsRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = Field(None, pattern=r"^[0-9]{10}$")
    branch: Optional[Branch] = None
    year: Optional[Year] = None
    semester: Optional[Semester] = None


@app.put("/api/auth/update-details")
def update_details(payload: UpdateDetailsRequest, user: dict = Depends(get_verified_user), db: Database = Depends(get_db)):
    changes = payload.model_dump(exclude_none=True)
    if user.get("role") != "student":
        for field in ("branch", "year", "semester"):
            changes.pop(field, None)
    if changes:
        changes["updated_at"] = now()
        user = db["user"].find_one_and_update({"_id": user["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER)
    return user_with_subjects(db, user)


class UpdatePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6)


@app.put("/api/auth/update-password")
def update_password(
    payload: UpdatePasswordRequest,
    response: Response,
    user: dict = Depends(get_verified_user),
    db: Database = Depends(get_db),
):
    if not verify_password(payload.current_password, user.get("password")):
        raise HTTPException(status_code=401, detail="Current password is incorrect")
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"password": hash_password(payload.new_password), "updated_at": now()}})
    return start_session(response, user)


class FCMTokenRequest(BaseModel):
    fcm_token: str = Field(..., min_length=1)


@app.put("/api/auth/update-fcm-token")
def update_fcm_token(payload: FCMTokenRequest, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"fcm_token": payload.fcm_token}})
    return {"message": "FCM token updated successfully"}


@app.get("/api/auth/logout")
def logout(response: Response, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"fcm_token": None}})
    response.delete_cookie(settings.COOKIE_NAME)
    return {"message": "Logged out successfully"}


# ----------------------
# Content: shared pieces
# ----------------------
class ListingQuery:
    def __init__(
        self,
        branch: Optional[Branch] = None,
        year: Optional[int] = Query(None, ge=1, le=4),
        semester: Optional[int] = Query(None, ge=1, le=8),
        subject: Optional[str] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
        sort: Optional[str] = None,
        select: Optional[str] = None,
    ):
        self.filters = {"branch": branch, "year": year, "semester": semester, "subject": subject}
        self.page = page
        self.limit = limit
        self.sort = sort
        self.select = select


def list_content(db: Database, kind: ContentKind, user: dict, params: ListingQuery, extra: Optional[Dict[str, Any]] = None):
    return content.list_items(
        db, kind, user, params.filters, extra, page=params.page, limit=params.limit, sort=params.sort, select=params.select
    )


def file_fields(stored: storage.StoredFile) -> Dict[str, Any]:
    return {"file_url": stored.url, "file_path": stored.path, "file_type": stored.file_type, "file_size": stored.size}


def discard_on_error(stored: List[storage.StoredFile], action, *args):
    """Run ``action``; if it raises, remove the files that were saved for it."""
    try:
        return action(*args)
    except (HTTPException, ValidationError):
        for item in stored:
            storage.delete_file(item.path)
        raise


def parse_json_form(value: Optional[str], adapter: TypeAdapter, field: str):
    if value in (None, ""):
        return None
    try:
        return adapter.validate_json(value)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=f"Invalid {field}: {exc.errors(include_url=False)[0]['msg']}")


def split_tags(tags: Optional[str]) -> Optional[List[str]]:
    if tags is None:
        return None
    return [t.strip() for t in tags.split(",") if t.strip()]


def register_content_routes(kind: ContentKind, prefix: str, verifiable: bool = True, downloadable: bool = True, modify_dep=get_verified_user):
    """Get, delete, view and (optionally) verify and download routes shared by every content kind."""

    @app.get(f"{prefix}/{{item_id}}", name=f"get_{kind.name}")
    def get_content(item_id: str, user: dict = Depends(get_verified_user), db: Database = Depends(get_db)):
        return clean(content.record_view(db, kind, item_id))

    @app.delete(f"{prefix}/{{item_id}}", name=f"delete_{kind.name}")
    def delete_content(item_id: str, user: dict = Depends(modify_dep), db: Database = Depends(get_db)):
        doc = content.authorize_change(db, kind, user, item_id)
        content.delete_item(db, kind, doc)
        return {"success": True, "message": f"{kind.label} deleted"}

    @app.put(f"{prefix}/{{item_id}}/views", name=f"view_{kind.name}")
    def view_content(item_id: str, user: dict = Depends(get_verified_user), db: Database = Depends(get_db)):
        doc = content.record_view(db, kind, item_id)
        return {"id": str(doc["_id"]), "views": doc["views"]}

    if verifiable:
        @app.put(f"{prefix}/{{item_id}}/verify", name=f"verify_{kind.name}")
        def verify_content(
            item_id: str,
            user: dict = Depends(staff_only),
            db: Database = Depends(get_db),
            dispatcher: Dispatcher = Depends(get_dispatcher),
        ):
            return content.verify_item(db, kind, user, item_id, dispatcher)

    if downloadable:
        @app.get(f"{prefix}/{{item_id}}/download", name=f"download_{kind.name}")
        def download_content(item_id: str, user: dict = Depends(get_verified_user), db: Database = Depends(get_db)):
            doc = content.record_download(db, kind, item_id)
            return RedirectResponse(doc["file_url"], status_code=302)


# ----------------------
# Notes
# ----------------------
@app.get("/api/notes")
def list_notes(params: ListingQuery = Depends(), user: dict = Depends(get_verified_user), db: Database = Depends(get_db)):
    return list_content(db, NOTE, user, params)


@app.post("/api/notes", status_code=201)
def create_note(
    title: str = Form(...),
    description: str = Form(...),
    subject: str = Form(...),
    branch: Branch = Form(...),
    year: int = Form(..., ge=1, le=4),
    semester: int = Form(..., ge=1, le=8),
    file: UploadFile = File(...),
    user: dict = Depends(get_verified_user),
    db: Database = Depends(get_db),
):
    stored = storage.save_upload(file, NOTE.category)
    fields = dict(title=title, description=description, subject=subject, branch=branch, year=year, semester=semester)
    fields.update(file_fields(stored))
    return clean(discard_on_error([stored], content.create_item, db, NOTE, user, fields))


@app.put("/api/notes/{item_id}")
def update_note(
    item_id: str,
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    subject: Optional[str] = Form(None),
    branch: Optional[Branch] = Form(None),
    year: Optional[int] = Form(None, ge=1, le=4),
    semester: Optional[int] = Form(None, ge=1, le=8),
    file: Optional[UploadFile] = File(None),
    user: dict = Depends(get_verified_user),
    db: Database = Depends(get_db),
):
    doc = content.authorize_change(db, NOTE, user, item_id)
    changes = dict(title=title, description=description, subject=subject, branch=branch, year=year, semester=semester)
    changes = {k: v for k, v in changes.items() if v is not None}
    saved = []
    if storage.has_file(file):
        saved.append(storage.save_upload(file, NOTE.category))
        changes.update(file_fields(saved[0]))
    return clean(discard_on_error(saved, content.update_item, db, NOTE, doc, changes))


class RatingRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=200)


@app.post("/api/notes/{item_id}/ratings")
def rate_note(item_id: str, payload: RatingRequest, user: dict = Depends(get_verified_user), db: Database = Depends(get_db)):
    return content.rate_item(db, NOTE, user, item_id, payload.rating, payload.comment)


register_content_routes(NOTE, "/api/notes")


# ----------------------
# Syllabus
# ----------------------
units_adapter = TypeAdapter(List[Unit])
books_adapter = TypeAdapter(List[ReferenceBook])


@app.get("/api/syllabus")
def list_syllabi(params: ListingQuery = Depends(), user: dict = Depends(get_verified_user), db: Database = Depends(get_db)):
    return list_content(db, SYLLABUS, user, params)


@app.post("/api/syllabus", status_code=201)
def create_syllabus(
    title: str = Form(...),
    description: str = Form(...),
    subject: str = Form(...),
    branch: Branch = Form(...),
    year: int = Form(..., ge=1, le=4),
    semester: int = Form(..., ge=1, le=8),
    total_marks: int = Form(..., ge=0),
    passing_marks: int = Form(..., ge=0),
    exam_pattern: str = Form(...),
    units: Optional[str] = Form(None, description="JSON list of units"),
    reference_books: Optional[str] = Form(None, description="JSON list of reference books"),
    file: UploadFile = File(...),
    user: dict = Depends(staff_only),
    db: Database = Depends(get_db),
):
    fields = dict(
        title=title,
        description=description,
        subject=subject,
        branch=branch,
        year=year,
        semester=semester,
        total_marks=total_marks,
        passing_marks=passing_marks,
        exam_pattern=exam_pattern,
        units=[u.model_dump() for u in parse_json_form(units, units_adapter, "units") or []],
        reference_books=[b.model_dump() for b in parse_json_form(reference_books, books_adapter, "reference_books") or []],
    )
    stored = storage.save_upload(file, SYLLABUS.category)
    fields.update(file_fields(stored))
    doc = discard_on_error([stored], content.create_item, db, SYLLABUS, user, fields)
    db["subject"].update_one({"_id": doc["subject"]}, {"$set": {"syllabus": doc["_id"]}})
    return clean(doc)


@app.put("/api/syllabus/{item_id}")
def update_syllabus(
    item_id: str,
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    total_marks: Optional[int] = Form(None, ge=0),
    passing_marks: Optional[int] = Form(None, ge=0),
    exam_pattern: Optional[str] = Form(None),
    units: Optional[str] = Form(None),
    reference_books: Optional[str] = Form(None),
    is_active: Optional[bool] = Form(None),
    file: Optional[UploadFile] = File(None),
    user: dict = Depends(staff_only),
    db: Database = Depends(get_db),
):
    doc = content.authorize_change(db, SYLLABUS, user, item_id)
    changes: Dict[str, Any] = dict(
        title=title,
        description=description,
        total_marks=total_marks,
        passing_marks=passing_marks,
        exam_pattern=exam_pattern,
        is_active=is_active,
    )
    parsed_units = parse_json_form(units, units_adapter, "units")
    if parsed_units is not None:
        changes["units"] = [u.model_dump() for u in parsed_units]
    parsed_books = parse_json_form(reference_books, books_adapter, "reference_books")
    if parsed_books is not None:
        changes["reference_books"] = [b.model_dump() for b in parsed_books]
    changes = {k: v for k, v in changes.items() if v is not None}
    saved = []
    if storage.has_file(file):
        saved.append(storage.save_upload(file, SYLLABUS.category))
        changes.update(file_fields(saved[0]))
    return clean(discard_on_error(saved, content.update_item, db, SYLLABUS, doc, changes))


register_content_routes(SYLLABUS, "/api/syllabus", verifiable=False, modify_dep=staff_only)


# ----------------------
# Videos
# ----------------------
@app.get("/api/videos")
def list_videos(
    params: ListingQuery = Depends(),
    tag: Optional[str] = None,
    user: dict = Depends(get_verified_user),
    db: Database = Depends(get_db),
):
    return list_content(db, VIDEO, user, params, {"tags": tag} if tag else None)


@app.post("/api/videos", status_code=201)
def create_video(
    title: str = Form(...),
    description: str = Form(...),
    subject: str = Form(...),
    branch: Branch = Form(...),
    year: int = Form(..., ge=1, le=4),
    semester: int = Form(..., ge=1, le=8),
    youtube_url: Optional[str] = Form(None),
    duration: Optional[int] = Form(None, ge=0),
    tags: Optional[str] = Form(None, description="Comma separated"),
    file: Optional[UploadFile] = File(None),
    user: dict = Depends(get_verified_user),
    db: Database = Depends(get_db),
):
    fields: Dict[str, Any] = dict(
        title=title,
        description=description,
        subject=subject,
        branch=branch,
        year=year,
        semester=semester,
        duration=duration,
        tags=split_tags(tags) or [],
    )
    saved = []
    if youtube_url:
        fields.update(content.youtube_fields(youtube_url))
    elif storage.has_file(file):
        saved.append(storage.save_upload(file, VIDEO.category))
        fields.update(video_url=saved[0].url, file_path=saved[0].path, is_youtube_video=False)
    else:
        raise HTTPException(status_code=400, detail="Please upload a video file or provide a YouTube URL")
    return clean(discard_on_error(saved, content.create_item, db, VIDEO, user, fields))


@app.put("/api/videos/{item_id}")
def update_video(
    item_id: str,
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    subject: Optional[str] = Form(None),
    branch: Optional[Branch] = Form(None),
    year: Optional[int] = Form(None, ge=1, le=4),
    semester: Optional[int] = Form(None, ge=1, le=8),
    youtube_url: Optional[str] = Form(None),
    duration: Optional[int] = Form(None, ge=0),
    tags: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    user: dict = Depends(get_verified_user),
    db: Database = Depends(get_db),
):
    doc = content.authorize_change(db, VIDEO, user, item_id)
    changes = dict(
        title=title, description=description, subject=subject, branch=branch,
        year=year, semester=semester, duration=duration, tags=split_tags(tags),
    )
    changes = {k: v for k, v in changes.items() if v is not None}
    saved = []
    if youtube_url:
        changes.update(content.youtube_fields(youtube_url))
    elif storage.has_file(file):
        saved.append(storage.save_upload(file, VIDEO.category))
        changes.update(
            video_url=saved[0].url,
            file_path=saved[0].path,
            is_youtube_video=False,
            youtube_id=None,
            thumbnail_url="default-thumbnail.jpg",
        )
    return clean(discard_on_error(saved, content.update_item, db, VIDEO, doc, changes))


@app.put("/api/videos/{item_id}/like")
def like_video(item_id: str, user: dict = Depends(get_verified_user), db: Database = Depends(get_db)):
    likes, liked = content.toggle_like(db, VIDEO, user, item_id)
    return {"likes": likes, "liked": liked}


class CommentRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=500)


@app.post("/api/videos/{item_id}/comments", status_code=201)
def comment_video(item_id: str, payload: CommentRequest, user: dict = Depends(get_verified_user), db: Database = Depends(get_db)):
    return clean(content.add_comment(db, VIDEO, user, item_id, payload.text))


@app.delete("/api/videos/{item_id}/comments/{comment_id}")
def delete_video_comment(item_id: str, comment_id: str, user: dict = Depends(get_verified_user), db: Database = Depends(get_db)):
    content.delete_comment(db, VIDEO, user, item_id, comment_id)
    return {"success": True, "message": "Comment deleted"}


register_content_routes(VIDEO, "/api/videos", downloadable=False)


# ----------------------
# Previous year questions
# ----------------------
def solution_fields(stored: storage.StoredFile) -> Dict[str, Any]:
    return {"has_solution": True, "solution_file_url": stored.url, "solution_file_path": stored.path}


@app.get("/api/pyq")
def list_pyqs(
    params: ListingQuery = Depends(),
    exam_type: Optional[ExamType] = None,
    exam_year: Optional[int] = None,
    difficulty: Optional[Difficulty] = None,
    has_solution: Optional[bool] = None,
    user: dict = Depends(get_verified_user),
    db: Database = Depends(get_db),
):
    extra = {"exam_type": exam_type, "exam_year": exam_year, "difficulty": difficulty, "has_solution": has_solution}
    return list_content(db, PYQ_KIND, user, params, {k: v for k, v in extra.items() if v is not None})


@app.post("/api/pyq", status_code=201)
def create_pyq(
    title: str = Form(...),
    description: str = Form(...),
    subject: str = Form(...),
    branch: Branch = Form(...),
    year: int = Form(..., ge=1, le=4),
    semester: int = Form(..., ge=1, le=8),
    exam_type: ExamType = Form(...),
    exam_year: int = Form(..., ge=1900, le=2100),
    difficulty: Difficulty = Form("Medium"),
    total_marks: Optional[int] = Form(None, ge=0),
    duration: Optional[int] = Form(None, ge=0),
    file: UploadFile = File(...),
    solution: Optional[UploadFile] = File(None),
    user: dict = Depends(get_verified_user),
    db: Database = Depends(get_db),
):
    fields = dict(
        title=title, description=description, subject=subject, branch=branch, year=year, semester=semester,
        exam_type=exam_type, exam_year=exam_year, difficulty=difficulty, total_marks=total_marks, duration=duration,
    )
    saved = [storage.save_upload(file, PYQ_KIND.category)]
    fields.update(file_fields(saved[0]))
    if storage.has_file(solution):
        saved.append(discard_on_error(saved, storage.save_upload, solution, PYQ_KIND.category))
        fields.update(solution_fields(saved[1]))
    return clean(discard_on_error(saved, content.create_item, db, PYQ_KIND, user, fields))


@app.put("/api/pyq/{item_id}")
def update_pyq(
    item_id: str,
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    subject: Optional[str] = Form(None),
    branch: Optional[Branch] = Form(None),
    year: Optional[int] = Form(None, ge=1, le=4),
    semester: Optional[int] = Form(None, ge=1, le=8),
    exam_type: Optional[ExamType] = Form(None),
    exam_year: Optional[int] = Form(None, ge=1900, le=2100),
    difficulty: Optional[Difficulty] = Form(None),
    total_marks: Optional[int] = Form(None, ge=0),
    duration: Optional[int] = Form(None, ge=0),
    file: Optional[UploadFile] = File(None),
    user: dict = Depends(get_verified_user),
    db: Database = Depends(get_db),
):
    doc = content.authorize_change(db, PYQ_KIND, user, item_id)
    changes = dict(
        title=title, description=description, subject=subject, branch=branch, year=year, semester=semester,
        exam_type=exam_type, exam_year=exam_year, difficulty=difficulty, total_marks=total_marks, duration=duration,
    )
    changes = {k: v for k, v in changes.items() if v is not None}
    saved = []
    if storage.has_file(file):
        saved.append(storage.save_upload(file, PYQ_KIND.category))
        changes.update(file_fields(saved[-1]))
    return clean(discard_on_error(saved, content.update_item, db, PYQ_KIND, doc, changes))


@app.put("/api/pyq/{item_id}/solution")
def add_pyq_solution(
    item_id: str,
    file: UploadFile = File(...),
    user: dict = Depends(staff_only),
    db: Database = Depends(get_db),
):
    doc = content.get_item(db, PYQ_KIND, item_id)
    stored = storage.save_upload(file, PYQ_KIND.category)
    return clean(discard_on_error([stored], content.update_item, db, PYQ_KIND, doc, solution_fields(stored)))


@app.get("/api/pyq/{item_id}/solution/download")
def download_pyq_solution(item_id: str, user: dict = Depends(get_verified_user), db: Database = Depends(get_db)):
    doc = content.get_item(db, PYQ_KIND, item_id)
    if not doc.get("has_solution") or not doc.get("solution_file_url"):
        raise HTTPException(status_code=404, detail="No solution available for this PYQ")
    content.record_download(db, PYQ_KIND, item_id)
    return RedirectResponse(doc["solution_file_url"], status_code=302)


register_content_routes(PYQ_KIND, "/api/pyq")


# ----------------------
# Subjects
# ----------------------
@app.get("/api/subjects")
def list_subjects(
    branch: Optional[Branch] = None,
    year: Optional[int] = Query(None, ge=1, le=4),
    semester: Optional[int] = Query(None, ge=1, le=8),
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    sort: Optional[str] = None,
    user: dict = Depends(get_verified_user),
    db: Database = Depends(get_db),
):
    flt = {k: v for k, v in {"branch": branch, "year": year, "semester": semester}.items() if v is not None}
    if user.get("role") != "admin":
        flt["is_active"] = True
    return run_listing(db["subject"], flt, page=page, limit=limit, sort=sort or "name")


@app.get("/api/subjects/{subject_id}")
def get_subject(subject_id: str, user: dict = Depends(get_verified_user), db: Database = Depends(get_db)):
    subject = get_or_404(db, "subject", subject_id, "Subject")
    out = clean(subject)
    out["teachers"] = [public_user(t) for t in db["user"].find({"_id": {"$in": subject.get("teachers", [])}})]
    return out


class SubjectRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    code: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1, max_length=500)
    branch: Branch
    year: Year
    semester: Semester
    credits: int = Field(..., ge=1, le=10)
    is_elective: bool = False
    is_active: bool = True


class SubjectUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    code: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, min_length=1, max_length=500)
    branch: Optional[Branch] = None
    year: Optional[Year] = None
    semester: Optional[Semester] = None
    credits: Optional[int] = Field(None, ge=1, le=10)
    is_elective: Optional[bool] = None
    is_active: Optional[bool] = None


@app.post("/api/admin/subjects", status_code=201)
def create_subject(payload: SubjectRequest, user: dict = Depends(admin_only), db: Database = Depends(get_db)):
    code = payload.code.strip().upper()
    if db["subject"].find_one({"code": code}):
        raise HTTPException(status_code=409, detail=f"Subject with code {code} already exists")
    try:
        new_id = create_document(db, "subject", Subject(**payload.model_dump(exclude={"code"}), code=code))
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail=f"Subject with code {code} already exists")
    return clean(db["subject"].find_one({"_id": new_id}))


@app.put("/api/admin/subjects/{subject_id}")
def update_subject(subject_id: str, payload: SubjectUpdateRequest, user: dict = Depends(admin_only), db: Database = Depends(get_db)):
    subject = get_or_404(db, "subject", subject_id, "Subject")
    changes = payload.model_dump(exclude_none=True)
    if "code" in changes:
        changes["code"] = changes["code"].strip().upper()
        clash = db["subject"].find_one({"code": changes["code"], "_id": {"$ne": subject["_id"]}})
        if clash:
            raise HTTPException(status_code=409, detail=f"Subject with code {changes['code']} already exists")
    if not changes:
        return clean(subject)
    changes["updated_at"] = now()
    updated = db["subject"].find_one_and_update({"_id": subject["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER)
    return clean(updated)


@app.delete("/api/admin/subjects/{subject_id}")
def delete_subject(subject_id: str, user: dict = Depends(admin_only), db: Database = Depends(get_db)):
    subject = get_or_404(db, "subject", subject_id, "Subject")
    in_use = {kind.plural: db[kind.collection].count_documents({"subject": subject["_id"]}) for kind in KINDS.values()}
    if any(in_use.values()):
        detail = ", ".join(f"{count} {name}" for name, count in in_use.items() if count)
        raise HTTPException(status_code=409, detail=f"Cannot delete subject. It is referenced by {detail}")
    db["subject"].delete_one({"_id": subject["_id"]})
    db["user"].update_many({"subjects": subject["_id"]}, {"$pull": {"subjects": subject["_id"]}})
    return {"success": True, "message": "Subject deleted"}


class AssignTeachersRequest(BaseModel):
    teachers: List[str] = Field(..., min_length=1)


@app.put("/api/admin/subjects/{subject_id}/teachers")
def assign_teachers(subject_id: str, payload: AssignTeachersRequest, user: dict = Depends(admin_only), db: Database = Depends(get_db)):
    subject = get_or_404(db, "subject", subject_id, "Subject")
    ids = list(dict.fromkeys(oid(t) for t in payload.teachers))
    teachers = list(db["user"].find({"_id": {"$in": ids}, "role": "teacher"}, {"_id": 1}))
    if len(teachers) != len(ids):
        raise HTTPException(status_code=400, detail="One or more users are not teachers")
    updated = db["subject"].find_one_and_update(
        {"_id": subject["_id"]},
        {"$set": {"teachers": ids, "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    db["user"].update_many({"_id": {"$in": ids}}, {"$addToSet": {"subjects": subject["_id"]}})
    return clean(updated)


# ----------------------
# Announcements
# ----------------------
target_audience_adapter = TypeAdapter(TargetAudience)


@app.get("/api/announcements")
def list_announcements(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    user: dict = Depends(get_verified_user),
    db: Database = Depends(get_db),
):
    return run_listing(db["announcement"], announcement_visibility_filter(user), page=page, limit=limit)


@app.get("/api/admin/announcements")
def list_all_announcements(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    user: dict = Depends(admin_only),
    db: Database = Depends(get_db),
):
    return run_listing(db["announcement"], {}, page=page, limit=limit)


def save_attachments(files: Optional[List[UploadFile]]) -> List[storage.StoredFile]:
    uploads = [f for f in files or [] if storage.has_file(f)]
    if len(uploads) > 3:
        raise HTTPException(status_code=400, detail="At most 3 attachments are allowed")
    saved: List[storage.StoredFile] = []
    for upload in uploads:
        saved.append(discard_on_error(saved, storage.save_upload, upload, "misc"))
    return saved


@app.post("/api/announcements", status_code=201)
def create_announcement(
    title: str = Form(...),
    content_text: str = Form(..., alias="content"),
    priority: Priority = Form("Medium"),
    target_audience: Optional[str] = Form(None, description="JSON object"),
    expires_at: Optional[datetime] = Form(None),
    tags: Optional[str] = Form(None, description="Comma separated"),
    attachments: Optional[List[UploadFile]] = File(None),
    user: dict = Depends(admin_only),
    db: Database = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    audience = parse_json_form(target_audience, target_audience_adapter, "target_audience") or TargetAudience()
    saved = save_attachments(attachments)

    def build():
        return Announcement(
            title=title,
            content=content_text,
            posted_by=user["_id"],
            attachments=[s.attachment() for s in saved],
            priority=priority,
            target_audience=audience,
            expires_at=as_utc(expires_at),
            tags=split_tags(tags) or [],
        )

    announcement = discard_on_error(saved, build)
    new_id = create_document(db, "announcement", announcement)
    dispatcher.notify(
        f"New Announcement: {title}",
        truncate(content_text, 100),
        data={"type": "announcement", "id": str(new_id)},
        target_audience=announcement.target_audience.model_dump(),
    )
    return clean(db["announcement"].find_one({"_id": new_id}))


@app.put("/api/announcements/{announcement_id}")
def update_announcement(
    announcement_id: str,
    title: Optional[str] = Form(None),
    content_text: Optional[str] = Form(None, alias="content"),
    priority: Optional[Priority] = Form(None),
    target_audience: Optional[str] = Form(None),
    expires_at: Optional[datetime] = Form(None),
    is_active: Optional[bool] = Form(None),
    tags: Optional[str] = Form(None),
    attachments: Optional[List[UploadFile]] = File(None),
    user: dict = Depends(admin_only),
    db: Database = Depends(get_db),
):
    doc = get_or_404(db, "announcement", announcement_id, "Announcement")
    changes: Dict[str, Any] = dict(
        title=title, content=content_text, priority=priority, expires_at=as_utc(expires_at), is_active=is_active, tags=split_tags(tags),
    )
    audience = parse_json_form(target_audience, target_audience_adapter, "target_audience")
    if audience is not None:
        changes["target_audience"] = audience.model_dump()
    changes = {k: v for k, v in changes.items() if v is not None}

    saved = save_attachments(attachments)
    if saved:
        changes["attachments"] = [s.attachment() for s in saved]
    merged = {k: v for k, v in doc.items() if k in Announcement.model_fields}
    merged.update(changes)
    discard_on_error(saved, Announcement.model_validate, merged)

    changes["updated_at"] = now()
    updated = db["announcement"].find_one_and_update({"_id": doc["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER)
    if saved:
        for old in doc.get("attachments", []):
            storage.delete_file(old.get("file_path"))
    return clean(updated)


@app.delete("/api/announcements/{announcement_id}")
def delete_announcement(announcement_id: str, user: dict = Depends(admin_only), db: Database = Depends(get_db)):
    doc = get_or_404(db, "announcement", announcement_id, "Announcement")
    db["announcement"].delete_one({"_id": doc["_id"]})
    for attachment in doc.get("attachments", []):
        storage.delete_file(attachment.get("file_path"))
    return {"success": True, "message": "Announcement deleted"}


# ----------------------
# Admin
# ----------------------
@app.get("/api/admin/stats")
def dashboard_stats(user: dict = Depends(admin_only), db: Database = Depends(get_db)):
    counts = {
        "users": db["user"].count_documents({}),
        "students": db["user"].count_documents({"role": "student"}),
        "teachers": db["user"].count_documents({"role": "teacher"}),
        "subjects": db["subject"].count_documents({}),
        "verified_content": 0,
        "pending_content": 0,
    }
    for kind in KINDS.values():
        counts[kind.plural] = db[kind.collection].count_documents({})
        counts["verified_content"] += db[kind.collection].count_documents({"is_verified": True})
        counts["pending_content"] += db[kind.collection].count_documents({"is_verified": False})

    recent_users = db["user"].find({}, {"name": 1, "email": 1, "role": 1, "branch": 1, "year": 1, "created_at": 1})
    popular_notes = db[NOTE.collection].find({}, {"title": 1, "subject": 1, "views": 1, "downloads": 1, "average_rating": 1})
    popular_videos = db[VIDEO.collection].find({}, {"title": 1, "subject": 1, "views": 1, "likes": 1})
    return {
        "counts": counts,
        "recent_users": clean(list(recent_users.sort("created_at", -1).limit(5))),
        "popular_content": {
            "notes": clean(list(popular_notes.sort("views", -1).limit(5))),
            "videos": clean(list(popular_videos.sort("views", -1).limit(5))),
        },
    }


@app.get("/api/admin/users")
def list_users(
    role: Optional[str] = Query(None, pattern="^(student|teacher|admin)$"),
    branch: Optional[Branch] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    sort: Optional[str] = None,
    user: dict = Depends(admin_only),
    db: Database = Depends(get_db),
):
    flt = {k: v for k, v in {"role": role, "branch": branch}.items() if v is not None}
    return run_listing(db["user"], flt, page=page, limit=limit, sort=sort, hidden=PRIVATE_USER_FIELDS)


class CreateUserRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = Field(None, pattern=r"^[0-9]{10}$")
    roll_number: Optional[str] = None
    profile: Profile


@app.post("/api/admin/users", status_code=201)
def create_user(payload: CreateUserRequest, user: dict = Depends(admin_only), db: Database = Depends(get_db)):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=409, detail="Email already registered")
    new_user = User(
        name=payload.name,
        email=email,
        phone=payload.phone,
        roll_number=payload.roll_number,
        password=hash_password(payload.password),
        is_verified=True,
        **profile_fields(payload.profile),
    )
    try:
        new_id = create_document(db, "user", new_user)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Email already registered")
    return public_user(db["user"].find_one({"_id": new_id}))


@app.get("/api/admin/users/{user_id}")
def get_user(user_id: str, user: dict = Depends(admin_only), db: Database = Depends(get_db)):
    return user_with_subjects(db, get_or_404(db, "user", user_id, "User"))


class UpdateUserRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, pattern=r"^[0-9]{10}$")
    roll_number: Optional[str] = None
    is_verified: Optional[bool] = None
    profile: Optional[Profile] = None


@app.put("/api/admin/users/{user_id}")
def update_user(user_id: str, payload: UpdateUserRequest, user: dict = Depends(admin_only), db: Database = Depends(get_db)):
    target = get_or_404(db, "user", user_id, "User")
    changes = payload.model_dump(exclude_none=True, exclude={"profile"})
    if "email" in changes:
        changes["email"] = changes["email"].lower()
        if db["user"].find_one({"email": changes["email"], "_id": {"$ne": target["_id"]}}):
            raise HTTPException(status_code=409, detail="Email already registered")
    if payload.profile is not None:
        enforce(can_change_role(target, payload.profile.role, db["user"].count_documents({"role": "admin"})))
        changes.update(profile_fields(payload.profile))
    if changes:
        changes["updated_at"] = now()
        target = db["user"].find_one_and_update({"_id": target["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER)
    return public_user(target)


@app.delete("/api/admin/users/{user_id}")
def delete_user(user_id: str, user: dict = Depends(admin_only), db: Database = Depends(get_db)):
    target = get_or_404(db, "user", user_id, "User")
    enforce(can_delete_user(target, db["user"].count_documents({"role": "admin"})))
    db["user"].delete_one({"_id": target["_id"]})
    db["subject"].update_many({"teachers": target["_id"]}, {"$pull": {"teachers": target["_id"]}})
    return {"success": True, "message": "User deleted"}


@app.get("/api/admin/pending-content")
def pending_content(user: dict = Depends(admin_only), db: Database = Depends(get_db)):
    return content.pending_items(db)


class VerifyContentRequest(BaseModel):
    content_type: str
    content_id: str


@app.put("/api/admin/verify-content")
def verify_content(
    payload: VerifyContentRequest,
    user: dict = Depends(admin_only),
    db: Database = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return content.verify_item(db, kind_for(payload.content_type), user, payload.content_id, dispatcher)


# ----------------------
# Community
# ----------------------
@app.get("/api/community/chats")
def list_chats(user: dict = Depends(get_verified_user), db: Database = Depends(get_db)):
    return community.list_chats(db, user)


class AccessChatRequest(BaseModel):
    user_id: str


@app.post("/api/community/chats")
def access_chat(payload: AccessChatRequest, user: dict = Depends(get_verified_user), db: Database = Depends(get_db)):
    return community.present_chat(db, community.access_chat(db, user, payload.user_id))


class CreateGroupRequest(BaseModel):
    name: str = Field(..., min_length=1)
    users: List[str] = Field(default_factory=list)
    is_public: bool = False
    subject: Optional[str] = None
    branch: Optional[Branch] = None
    year: Optional[Year] = None
    semester: Optional[Semester] = None


@app.post("/api/community/chats/group", status_code=201)
def create_group(payload: CreateGroupRequest, user: dict = Depends(get_verified_user), db: Database = Depends(get_db)):
    chat = community.create_group(
        db, user, payload.name, payload.users, payload.is_public, payload.subject, payload.branch, payload.year, payload.semester
    )
    return community.present_chat(db, chat)


class UpdateGroupRequest(BaseModel):
    chat_name: Optional[str] = Field(None, min_length=1)
    is_public: Optional[bool] = None
    subject: Optional[str] = None
    branch: Optional[Branch] = None
    year: Optional[Year] = None
    semester: Optional[Semester] = None


@app.put("/api/community/chats/group/{chat_id}")
def update_group(chat_id: str, payload: UpdateGroupRequest, user: dict = Depends(get_verified_user), db: Database = Depends(get_db)):
    chat = community.update_group(db, user, chat_id, payload.model_dump(exclude_none=True))
    return community.present_chat(db, chat)


class MembersRequest(BaseModel):
    users: List[str] = Field(..., min_length=1)


@app.put("/api/community/chats/group/{chat_id}/add")
def add_to_group(
    chat_id: str,
    payload: MembersRequest,
    user: dict = Depends(get_verified_user),
    db: Database = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return community.present_chat(db, community.add_members(db, user, chat_id, payload.users, dispatcher))


@app.put("/api/community/chats/group/{chat_id}/remove/{user_id}")
def remove_from_group(chat_id: str, user_id: str, user: dict = Depends(get_verified_user), db: Database = Depends(get_db)):
    return community.present_chat(db, community.remove_member(db, user, chat_id, user_id))


@app.put("/api/community/chats/group/{chat_id}/transfer/{user_id}")
def transfer_group(
    chat_id: str,
    user_id: str,
    user: dict = Depends(get_verified_user),
    db: Database = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return community.present_chat(db, community.transfer_ownership(db, user, chat_id, user_id, dispatcher))


@app.get("/api/community/chats/public")
def public_groups(
    branch: Optional[Branch] = None,
    year: Optional[int] = Query(None, ge=1, le=4),
    semester: Optional[int] = Query(None, ge=1, le=8),
    subject: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    user: dict = Depends(get_verified_user),
    db: Database = Depends(get_db),
):
    query = {"branch": branch, "year": year, "semester": semester, "subject": subject}
    return community.list_public_groups(db, query, page=page, limit=limit)


@app.put("/api/community/chats/join/{chat_id}")
def join_group(
    chat_id: str,
    user: dict = Depends(get_verified_user),
    db: Database = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return community.present_chat(db, community.join_group(db, user, chat_id, dispatcher))


@app.put("/api/community/chats/leave/{chat_id}")
def leave_group(chat_id: str, user: dict = Depends(get_verified_user), db: Database = Depends(get_db)):
    community.leave_group(db, user, chat_id)
    return {"success": True, "message": "Left the group"}


@app.post("/api/community/messages", status_code=201)
async def send_message(
    chat_id: str = Form(...),
    message_text: str = Form(..., alias="content"),
    attachments: Optional[List[UploadFile]] = File(None),
    user: dict = Depends(get_verified_user),
    db: Database = Depends(get_db),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    community.get_member_chat(db, user, chat_id)
    saved = save_attachments(attachments)
    message = community.send_message(db, user, chat_id, message_text, [s.attachment() for s in saved], dispatcher)
    await hub.publish_message(message)
    return clean(message)


@app.get("/api/community/messages/{chat_id}")
def get_messages(
    chat_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(community.MESSAGE_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    user: dict = Depends(get_verified_user),
    db: Database = Depends(get_db),
):
    return community.get_messages(db, user, chat_id, page=page, limit=limit)


@app.delete("/api/community/messages/{message_id}")
def delete_message(message_id: str, user: dict = Depends(get_verified_user), db: Database = Depends(get_db)):
    return clean(community.delete_message(db, user, message_id))


@app.get("/api/community/unread")
def unread(user: dict = Depends(get_verified_user), db: Database = Depends(get_db)):
    return community.unread_counts(db, user)


@app.get("/api/community/online")
def online_users(user: dict = Depends(get_verified_user)):
    return {"users": sorted(hub.online_users())}


@app.websocket("/ws/chat")
async def chat_socket(websocket: WebSocket, db: Database = Depends(get_db)):
    conn_id = await hub.connect(websocket)
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await hub.send(conn_id, "error", {"message": "Invalid JSON"})
                continue
            if not isinstance(message, dict):
                await hub.send(conn_id, "error", {"message": "Expected an object"})
                continue
            await hub.handle(conn_id, message, db)
    except WebSocketDisconnect:
        logger.debug("Connection %s closed", conn_id)
    finally:
        await hub.disconnect(conn_id)


# ----------------------
# Notifications
# ----------------------
@app.get("/api/notifications")
def list_notifications(
    unread_only: bool = False,
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    flt: Dict[str, Any] = {"user": user["_id"]}
    if unread_only:
        flt["read"] = False
    return run_listing(db["notification"], flt, page=page, limit=limit)


@app.put("/api/notifications/read-all")
def read_all_notifications(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    result = db["notification"].update_many({"user": user["_id"], "read": False}, {"$set": {"read": True}})
    return {"updated": result.modified_count}


@app.put("/api/notifications/{notification_id}/read")
def read_notification(notification_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    doc = db["notification"].find_one_and_update(
        {"_id": oid(notification_id), "user": user["_id"]},
        {"$set": {"read": True}},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise HTTPException(status_code=404, detail=f"Notification not found with id of {notification_id}")
    return clean(doc)


# ----------------------
# Study assistant
# ----------------------
class AskRequest(BaseModel):
    query: str = Field(..., min_length=1)
    context: Optional[str] = Field(None, description="Id of the note, syllabus, video or PYQ being viewed")
    context_type: Optional[str] = None


def describe_content(db: Database, kind: ContentKind, doc: dict) -> str:
    return kind.describe_for_prompt(doc, content.load_subject(db, kind.subject_ref(doc)))


@app.post("/api/chatbot/ask")
def ask_assistant(payload: AskRequest, user: dict = Depends(get_verified_user), db: Database = Depends(get_db)):
    context_type = payload.context_type or assistant.get_query_context(payload.query)
    context_text = ""
    kind = KINDS.get(context_type)
    if payload.context and kind is not None:
        doc = db[kind.collection].find_one({"_id": oid(payload.context)})
        if doc:
            context_text = describe_content(db, kind, doc)
    answer = assistant.get_completion(payload.query, context_text, context_type)
    return {"query": payload.query, "response": answer, "context": context_type}


@app.post("/api/chatbot/analyze-syllabus/{syllabus_id}")
def analyze_syllabus(syllabus_id: str, user: dict = Depends(get_verified_user), db: Database = Depends(get_db)):
    syllabus = content.get_item(db, SYLLABUS, syllabus_id)
    subject = content.load_subject(db, SYLLABUS.subject_ref(syllabus))
    analysis = assistant.analyze_syllabus(assistant.syllabus_text(syllabus, subject))
    return {"subject": subject.get("name") if subject else None, "syllabus": syllabus.get("title"), "analysis": analysis}


class DoubtRequest(BaseModel):
    question: str = Field(..., min_length=1)
    content_type: str
    content_id: str


@app.post("/api/chatbot/clear-doubt")
def clear_doubt(payload: DoubtRequest, user: dict = Depends(get_verified_user), db: Database = Depends(get_db)):
    kind = kind_for(payload.content_type)
    doc = content.get_item(db, kind, payload.content_id)
    answer = assistant.clear_doubt(payload.question, describe_content(db, kind, doc), kind.name)
    return {"question": payload.question, "content_type": kind.name, "content_title": doc.get("title"), "response": answer}


@app.get("/api/chatbot/study-recommendations")
def study_recommendations(user: dict = Depends(get_verified_user)):
    if user.get("role") != "student":
        raise HTTPException(status_code=403, detail="This feature is only available for students")
    recommendations = assistant.study_recommendations(user.get("branch"), user.get("year"), user.get("semester"))
    return {
        "student_info": {"branch": user.get("branch"), "year": user.get("year"), "semester": user.get("semester")},
        "recommendations": recommendations,
    }


# ----------------------
# Meta & health
# ----------------------
@app.get("/")
def read_root():
    return {"message": "Campus Content Hub API"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if settings.DATABASE_URL else "❌ Not Set",
        "database_name": "✅ Set" if settings.DATABASE_NAME else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    if database.db is None:
        return response
    response["database"] = "✅ Available"
    response["connection_status"] = "Connected"
    try:
        response["collections"] = database.db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
    except Exception as e:
        response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
