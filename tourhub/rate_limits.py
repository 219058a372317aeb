from fastapi import Request
from fastapi_limiter.depends import RateLimiter
from jose import JWTError, jwt

from .config import settings


async def get_key_by_user_id_or_ip(request: Request) -> str:
    """
    Tries to get the user ID from the JWT token.
    If it fails (no token, invalid token), it falls back to the client's IP.
    """
    client_host = request.client.host if request.client else "unknown"
    try:
        token = request.headers.get("Authorization")
        scheme, jwt_token = token.split()
        if scheme.lower() != "bearer":
            return client_host

        payload = jwt.decode(jwt_token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        user_id = payload.get("sub")

        if user_id:
            return f"user:{user_id}"
    except (JWTError, ValueError, AttributeError, TypeError):
        # If token is invalid, missing, or malformed, limit by IP
        pass
    return client_host


login_limiter = RateLimiter(times=10, minutes=1, identifier=get_key_by_user_id_or_ip)
forgot_password_limiter = RateLimiter(times=3, minutes=15, identifier=get_key_by_user_id_or_ip)
booking_limiter = RateLimiter(times=30, minutes=1, identifier=get_key_by_user_id_or_ip)
payment_limiter = RateLimiter(times=10, minutes=1, identifier=get_key_by_user_id_or_ip)
payout_limiter = RateLimiter(times=5, minutes=1, identifier=get_key_by_user_id_or_ip)

ALL_LIMITERS = [
    login_limiter,
    forgot_password_limiter,
    booking_limiter,
    payment_limiter,
    payout_limiter,
]
