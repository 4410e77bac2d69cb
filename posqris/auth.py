from fastapi import Header, HTTPException
from jose import JWTError, jwt

from posqris import config


def verify_token(authorization: str = Header(...)) -> dict:
    """Check the cashier's bearer token issued by the POS login and return its claims."""
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Unsupported authorization scheme")
        return jwt.decode(token, config.jwt_secret(), algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
