from __future__ import annotations

import argparse
from typing import Any

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import settings
from .db import SessionLocal, init_db
from .models import Doctor

security = HTTPBearer(auto_error=False)

DOCTOR_TOKEN_ALGORITHM = "HS256"


def issue_doctor_token(doctor_id: str, expires_at: int | None = None) -> str:
    """Sign a doctor bearer token.

    Operators mint tokens with the ``triage-intake-doctor-token`` command;
    the API itself never issues them.
    """
    if not settings.doctor_token_secret:
        raise RuntimeError("DOCTOR_TOKEN_SECRET is not configured")
    claims: dict[str, Any] = {
        "sub": doctor_id,
        "aud": settings.doctor_token_audience,
        "role": "doctor",
    }
    if expires_at is not None:
        claims["exp"] = expires_at
    return jwt.encode(claims, settings.doctor_token_secret, algorithm=DOCTOR_TOKEN_ALGORITHM)


async def require_doctor(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> dict[str, Any]:
    if not settings.doctor_token_secret:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Doctor token secret is not configured",
        )

    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
        )

    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.doctor_token_secret,
            algorithms=[DOCTOR_TOKEN_ALGORITHM],
            audience=settings.doctor_token_audience,
        )
    except JWTError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token validation failed",
        ) from exc

    if payload.get("role") != "doctor":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Doctor role required",
        )
    return payload


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Issue a doctor bearer token")
    parser.add_argument("doctor_id", help="id of an existing doctor")
    parser.add_argument(
        "--expires-at",
        type=int,
        default=None,
        help="expiry as a unix timestamp (default: no expiry)",
    )
    args = parser.parse_args(argv)

    init_db()
    with SessionLocal() as db:
        if db.get(Doctor, args.doctor_id) is None:
            raise SystemExit(f"Unknown doctor: {args.doctor_id}")
    print(issue_doctor_token(args.doctor_id, args.expires_at))


if __name__ == "__main__":
    main()
