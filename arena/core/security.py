from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from arena.core.config import settings

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60
OPERATOR_ROLE = "operator"

# Operator tokens are minted out of band with create_access_token
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/admin/token")

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None, secret_key: Optional[str] = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, secret_key or settings.SECRET_KEY, algorithm=ALGORITHM)

def create_operator_token(operator_id: str, expires_delta: Optional[timedelta] = None) -> str:
    return create_access_token({"sub": operator_id, "role": OPERATOR_ROLE}, expires_delta)

def verify_token(token: str, credentials_exception) -> dict:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise credentials_exception
    if payload.get("sub") is None:
        raise credentials_exception
    return payload

def get_current_operator(token: str = Depends(oauth2_scheme)) -> str:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    payload = verify_token(token, credentials_exception)
    if payload.get("role") != OPERATOR_ROLE:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Operator role required")
    return payload["sub"]
