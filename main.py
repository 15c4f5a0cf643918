import json
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from passlib.context import CryptContext
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from database import (
    CastError,
    DocumentNotFound,
    Store,
    ValidationError,
    create_document,
    find_by_id,
    find_by_id_and_delete,
    find_by_id_and_update,
    get_documents,
    populate,
    serialize,
    to_object_id,
    validate_document,
)
from schemas import Blog, LoginPayload, TokenResponse, User

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("bloglist")

# Auth settings
SECRET_KEY = os.getenv("JWT_SECRET", "dev_secret_change_me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))  # 7 days
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", 12))
PASSWORD_MIN_LENGTH = 3

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/login", auto_error=False)

USER_SUMMARY = ("username", "name")
BLOG_SUMMARY = ("title", "author", "url", "likes")
HIDDEN_USER_FIELDS = ("password_hash",)

router = APIRouter(prefix="/api")

# Helpers

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def get_store(request: Request) -> Store:
    return request.app.state.store


def auth_current_user(token: Optional[str] = Depends(oauth2_scheme), store: Store = Depends(get_store)):
    unauthorized = HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized")
    if not token:
        raise unauthorized
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user = store["user"].find_one({"_id": to_object_id(payload.get("id"))})
    except (jwt.PyJWTError, CastError):
        raise unauthorized
    if not user:
        raise unauthorized
    return user


def password_errors(password) -> list:
    if password is None or password == "":
        msg = "Password is required"
    elif not isinstance(password, str):
        msg = "Password must be a string"
    elif len(password) < PASSWORD_MIN_LENGTH:
        msg = f"Password must be at least {PASSWORD_MIN_LENGTH} characters long"
    else:
        return []
    return [{"type": "field", "value": password, "msg": msg, "path": "password", "location": "body"}]


def uniqueness_error(username: str) -> ValidationError:
    return ValidationError("User", {
        "username": f"Error, expected `username` to be unique. Value: `{username}`",
    })


# Blog routes

@router.get("/blogs")
def list_blogs(store: Store = Depends(get_store)):
    blogs = populate(store, get_documents(store, "blog"), "user", "user", USER_SUMMARY)
    return [serialize(b) for b in blogs]


@router.post("/blogs", status_code=status.HTTP_201_CREATED)
def create_blog(payload: dict = Body(...), current_user=Depends(auth_current_user),
                store: Store = Depends(get_store)):
    blog = validate_document(Blog, {**payload, "user": str(current_user["_id"])})
    doc = create_document(store, blog)
    # not atomic with the insert above; a failure here leaves the blog unlinked
    store["user"].update_one({"_id": current_user["_id"]}, {"$push": {"blogs": doc["_id"]}})
    populate(store, [doc], "user", "user", USER_SUMMARY)
    return serialize(doc)


@router.put("/blogs/{blog_id}")
def update_blog(blog_id: str, payload: dict = Body(...), store: Store = Depends(get_store)):
    updated = find_by_id_and_update(store, Blog, blog_id, payload)
    if updated is None:
        raise DocumentNotFound("blog", blog_id)
    return serialize(updated)


@router.delete("/blogs/{blog_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_blog(blog_id: str, current_user=Depends(auth_current_user), store: Store = Depends(get_store)):
    blog = find_by_id(store, "blog", blog_id)
    if blog is None:
        raise DocumentNotFound("blog", blog_id)
    if blog.get("user") != current_user["_id"]:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")
    deleted = find_by_id_and_delete(store, "blog", blog_id)
    if deleted is None:
        raise DocumentNotFound("blog", blog_id)
    store["user"].update_one({"_id": current_user["_id"]}, {"$pull": {"blogs": deleted["_id"]}})
    return Response(status_code=status.HTTP_204_NO_CONTENT,
                    headers={"X-Deleted-Resource": str(deleted["_id"])})


# User routes

@router.get("/users")
def list_users(store: Store = Depends(get_store)):
    users = populate(store, get_documents(store, "user"), "blogs", "blog", BLOG_SUMMARY)
    return [serialize(u, exclude=HIDDEN_USER_FIELDS) for u in users]


@router.post("/users", status_code=status.HTTP_201_CREATED)
def create_user(payload: dict = Body(...), store: Store = Depends(get_store)):
    errors = password_errors(payload.get("password"))
    if errors:
        logger.error("password policy: %s", "; ".join(e["msg"] for e in errors))
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"errors": errors})

    user = validate_document(User, {
        "username": payload.get("username"),
        "name": payload.get("name"),
        "password_hash": hash_password(payload["password"]),
    })
    if store["user"].find_one({"username": user.username}):
        raise uniqueness_error(user.username)
    try:
        doc = create_document(store, user)
    except DuplicateKeyError:
        raise uniqueness_error(user.username)
    return serialize(doc, exclude=HIDDEN_USER_FIELDS)


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginPayload, store: Store = Depends(get_store)):
    user = store["user"].find_one({"username": payload.username})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid username or password")
    token = create_access_token({"username": user["username"], "id": str(user["_id"])})
    return {"token": token, "username": user["username"], "name": user.get("name")}


# Error translation

def error_response(status_code: int, message: str, log_message: Optional[str] = None) -> JSONResponse:
    logger.error(log_message or message)
    return JSONResponse(status_code=status_code, content={"error": message})


async def cast_error_handler(request: Request, exc: CastError):
    return error_response(status.HTTP_400_BAD_REQUEST, "malformatted id", exc.message)


async def validation_error_handler(request: Request, exc: ValidationError):
    return error_response(status.HTTP_400_BAD_REQUEST, exc.message)


async def not_found_handler(request: Request, exc: DocumentNotFound):
    return error_response(status.HTTP_404_NOT_FOUND, exc.message)


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    # routing misses come from the router itself, not from a handler
    if exc.status_code in (404, 405) and exc.detail in ("Not Found", "Method Not Allowed"):
        return error_response(status.HTTP_404_NOT_FOUND, "unknown endpoint",
                              f"{request.method} {request.url.path}: unknown endpoint")
    return error_response(exc.status_code, str(exc.detail))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
    )
    return error_response(status.HTTP_400_BAD_REQUEST, f"malformed request: {details}")


def body_for_log(raw: bytes) -> str:
    """POST body as logged, with any password masked."""
    try:
        body = json.loads(raw)
    except ValueError:
        return raw.decode("utf-8", errors="replace")
    if isinstance(body, dict) and "password" in body:
        body["password"] = "***"
    return json.dumps(body)


async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    body = body_for_log(await request.body()) if request.method == "POST" else ""
    response = await call_next(request)
    elapsed = (time.perf_counter() - start) * 1000
    logger.info("%s %s %s %s - %.3f ms %s", request.method, request.url.path, response.status_code,
                response.headers.get("content-length", "-"), elapsed, body)
    return response


def create_app(store: Optional[Store] = None) -> FastAPI:
    """Build the API. Without a store, one is opened from the environment for the app's lifetime."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = store is None
        app.state.store = store or Store.connect()
        app.state.store.ensure_indexes()
        logger.info("connected to database %s", app.state.store.name)
        try:
            yield
        finally:
            if owned:
                app.state.store.close()

    app = FastAPI(title="Bloglist API", lifespan=lifespan)
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(log_requests)

    app.add_exception_handler(CastError, cast_error_handler)
    app.add_exception_handler(ValidationError, validation_error_handler)
    app.add_exception_handler(DocumentNotFound, not_found_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
