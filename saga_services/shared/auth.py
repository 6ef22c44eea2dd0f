"""
Shared — オペレーター認証 (Bearer JWT)

運用コマンド (/admin/*) は Authorization: Bearer <JWT> を必須とする。
署名鍵とアルゴリズムは Settings から取り、検証済みのクレームを返す。
"""

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .runtime import ServiceRuntime, get_runtime

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(401, detail, headers={"WWW-Authenticate": "Bearer"})


async def require_operator(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    runtime: ServiceRuntime = Depends(get_runtime),
) -> dict:
    """有効なトークンのクレームを返す。無い・不正なら 401。"""
    if credentials is None:
        raise _unauthorized("Missing token")
    try:
        return jwt.decode(
            credentials.credentials,
            runtime.settings.jwt_secret,
            algorithms=[runtime.settings.jwt_algorithm],
        )
    except jwt.PyJWTError as exc:
        raise _unauthorized("Invalid token") from exc


def operator_name(claims: dict) -> str:
    return str(claims.get("sub") or "operator")
