from dataclasses import dataclass

from fastapi import Header, HTTPException
from jose import JWTError, jwt

from settlement.config import JWT_SECRET
from settlement.models import Role


@dataclass(frozen=True)
class Principal:
    user_id: str
    email: str
    salon_id: str
    role: Role


def verify_token(authorization: str = Header(...)) -> Principal:
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Unsupported authorization scheme")
        claims = jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
        return Principal(
            user_id=claims["sub"],
            email=claims.get("email", ""),
            salon_id=claims["salon_id"],
            role=Role(claims.get("role", Role.STAFF.value)),
        )
    except (ValueError, KeyError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
