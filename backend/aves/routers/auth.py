from datetime import datetime, timedelta, timezone
from typing import Optional
import logging
import re

import httpx
from fastapi import APIRouter, HTTPException, Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..settings import settings
from ..db import get_db
from ..models import User as UserRow

router = APIRouter(prefix="/api/auth", tags=["auth"])

logger = logging.getLogger(__name__)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
ANONYMOUS_ID = "anonymous"
ANONYMOUS_EMAIL = "anonymous@aves.app"


class User(BaseModel):
	user_id: str
	email: Optional[str] = None

	@property
	def is_anonymous(self) -> bool:
		return self.user_id == ANONYMOUS_ID

	@property
	def is_admin(self) -> bool:
		return bool(self.email) and self.email.lower() in settings.admin_email_set


class Credentials(BaseModel):
	email: str
	password: str


def verify_password(plain_password: str, hashed_password: str) -> bool:
	return pwd_context.verify(plain_password, hashed_password)


def validate_password(password: str) -> Optional[str]:
	"""Return an error message when the password is too weak, else None."""
	if len(password) < 8:
		return "Password must be at least 8 characters"
	if not re.search(r"[A-Z]", password):
		return "Password must contain an uppercase letter"
	if not re.search(r"[a-z]", password):
		return "Password must contain a lowercase letter"
	if not re.search(r"\d", password):
		return "Password must contain a number"
	return None


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
	to_encode = data.copy()
	delta = expires_delta or timedelta(hours=settings.jwt_expire_hours)
	to_encode.update({"exp": datetime.now(timezone.utc) + delta})
	return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def _user_payload(row: UserRow) -> dict:
	return {"id": row.id, "email": row.email, "createdAt": row.created_at.isoformat()}


def _decode_local_token(token: str) -> Optional[User]:
	try:
		payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
	except JWTError:
		return None
	user_id = payload.get("userId")
	if not user_id:
		return None
	return User(user_id=str(user_id), email=payload.get("email"))


def supabase_configured() -> bool:
	return bool(settings.supabase_url and settings.supabase_service_role_key)


async def _verify_supabase_token(token: str) -> Optional[User]:
	if not supabase_configured():
		return None
	url = settings.supabase_url.rstrip("/") + "/auth/v1/user"
	headers = {"Authorization": f"Bearer {token}", "apikey": settings.supabase_service_role_key}
	async with httpx.AsyncClient(timeout=10) as client:
		try:
			r = await client.get(url, headers=headers)
		except httpx.RequestError as e:
			logger.warning("Supabase token verification failed: %s", e)
			return None
	if r.status_code != 200:
		return None
	data = r.json()
	if not data.get("id"):
		return None
	return User(user_id=str(data["id"]), email=data.get("email"))


async def resolve_token(token: Optional[str]) -> Optional[User]:
	if not token:
		return None
	user = _decode_local_token(token)
	if user is None:
		user = await _verify_supabase_token(token)
	return user


async def get_current_user(token: Optional[str] = Depends(oauth2_scheme)) -> User:
	user = await resolve_token(token)
	if user is None:
		raise HTTPException(status_code=401, detail="Could not validate credentials")
	return user


async def get_optional_user(token: Optional[str] = Depends(oauth2_scheme)) -> User:
	user = await resolve_token(token)
	if user is None:
		return User(user_id=ANONYMOUS_ID, email=ANONYMOUS_EMAIL)
	return user


async def optional_admin(user: User = Depends(get_optional_user)) -> User:
	# Warn only; never blocks
	if not user.is_admin:
		logger.warning("Non-admin user %s accessing admin endpoint", user.user_id)
	return user


@router.post("/register", status_code=201)
async def register(req: Credentials, db: Session = Depends(get_db)):
	email = (req.email or "").strip().lower()
	password = req.password or ""
	if not EMAIL_RE.match(email):
		raise HTTPException(status_code=400, detail="A valid email is required")
	problem = validate_password(password)
	if problem:
		raise HTTPException(status_code=400, detail=problem)
	existing = db.query(UserRow).filter(UserRow.email == email).first()
	if existing:
		raise HTTPException(status_code=409, detail="User already exists")
	row = UserRow(email=email, password_hash=pwd_context.hash(password))
	db.add(row)
	db.commit()
	db.refresh(row)
	logger.info("Registered user %s", row.id)
	token = create_access_token({"userId": row.id, "email": row.email})
	return {"token": token, "user": _user_payload(row)}


@router.post("/login")
async def login(req: Credentials, db: Session = Depends(get_db)):
	email = (req.email or "").strip().lower()
	row = db.query(UserRow).filter(UserRow.email == email).first()
	if not row or not verify_password(req.password or "", row.password_hash):
		raise HTTPException(status_code=401, detail="Invalid credentials")
	token = create_access_token({"userId": row.id, "email": row.email})
	return {"token": token, "user": _user_payload(row)}


@router.get("/verify")
async def verify(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	row = db.get(UserRow, user.user_id)
	if not row:
		raise HTTPException(status_code=404, detail="User not found")
	return {"user": _user_payload(row)}
