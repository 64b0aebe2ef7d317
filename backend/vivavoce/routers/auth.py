from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db import get_db
from ..models import AuthSession, AuthUser
from ..settings import settings

router = APIRouter(prefix="/auth", tags=["auth"])

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")


class Token(BaseModel):
	access_token: str
	token_type: str = "bearer"


class User(BaseModel):
	username: str
	display_name: Optional[str] = None

	@property
	def name(self) -> str:
		return self.display_name or self.username


class RegisterRequest(BaseModel):
	username: str
	password: str
	display_name: Optional[str] = None


def hash_password(password: str) -> str:
	# bcrypt only looks at the first 72 bytes
	return pwd_context.hash(password.encode("utf-8")[:72].decode("utf-8", errors="ignore"))


def verify_password(plain_password: str, hashed_password: str) -> bool:
	return pwd_context.verify(plain_password.encode("utf-8")[:72].decode("utf-8", errors="ignore"), hashed_password)


def authenticate_user(db: Session, username: str, password: str) -> Optional[User]:
	row = db.get(AuthUser, username)
	if row is None or not verify_password(password, row.password_hash):
		return None
	return User(username=row.username, display_name=row.display_name)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
	to_encode = data.copy()
	delta = expires_delta or timedelta(minutes=max(settings.access_token_expire_minutes, 1))
	to_encode.update({"exp": datetime.now(timezone.utc) + delta})
	return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


@router.post("/register", status_code=201)
async def register(req: RegisterRequest, db: Session = Depends(get_db)):
	username = (req.username or "").strip()
	if len(username) < 3 or len(username) > 128:
		raise HTTPException(status_code=400, detail="username must be 3-128 characters")
	if not req.password:
		raise HTTPException(status_code=400, detail="password is required")
	if db.get(AuthUser, username) is not None:
		raise HTTPException(status_code=409, detail="username already exists")
	db.add(AuthUser(username=username, password_hash=hash_password(req.password), display_name=req.display_name))
	db.commit()
	return {"ok": True}


@router.post("/token", response_model=Token)
async def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
	user = authenticate_user(db, form_data.username, form_data.password)
	if not user:
		raise HTTPException(status_code=401, detail="Incorrect username or password")
	# The jti names a server-side session row; deleting the row revokes the token
	session_id = uuid.uuid4().hex
	access_token = create_access_token({"sub": user.username, "jti": session_id})
	try:
		db.add(AuthSession(session_id=session_id, username=user.username))
		db.commit()
	except SQLAlchemyError as err:
		db.rollback()
		logger.error("Failed to persist auth session for %s: %s", user.username, err)
		raise HTTPException(status_code=503, detail="Could not start a session")
	return Token(access_token=access_token)


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
	credentials_exception = HTTPException(status_code=401, detail="Could not validate credentials")
	try:
		payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
	except JWTError:
		raise credentials_exception
	username: str | None = payload.get("sub")
	jti: str | None = payload.get("jti")
	if username is None or jti is None:
		raise credentials_exception
	try:
		row = db.get(AuthSession, jti)
		if not row or row.username != username:
			raise credentials_exception
		row.last_activity_at = datetime.utcnow()
		user_row = db.get(AuthUser, username)
		db.commit()
	except SQLAlchemyError:
		# On DB errors, fail closed
		db.rollback()
		raise credentials_exception
	return User(username=username, display_name=user_row.display_name if user_row else None)


@router.get("/me", response_model=User)
async def me(user: User = Depends(get_current_user)):
	return user
