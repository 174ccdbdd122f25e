from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from humanoid_orders.config import settings


def verify_token(authorization: str = Header(...)):
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Unsupported auth scheme")
        return jwt.decode(token, settings.JWT_SECRET, algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def require_admin(claims: dict = Depends(verify_token)):
    if claims.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return claims
