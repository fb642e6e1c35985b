from __future__ import annotations

from typing import Any

from tokenforge.config import Settings
from tokenforge.service.keys import ALGORITHM


def discovery_document(settings: Settings) -> dict[str, Any]:
    """OpenID Connect discovery metadata for this issuer."""

    base = settings.base_url
    api = f"{base}/api"
    return {
        "issuer": settings.resolved_issuer,
        "authorization_endpoint": f"{api}/auth/authorize",
        "token_endpoint": f"{api}/auth/token",
        "userinfo_endpoint": f"{api}/auth/me",
        "jwks_uri": f"{api}/.well-known/jwks.json",
        "registration_endpoint": f"{api}/auth/register",
        "end_session_endpoint": f"{api}/auth/logout",
        "scopes_supported": ["openid", "profile", "email"],
        "response_types_supported": [
            "code",
            "token",
            "id_token",
            "code token",
            "code id_token",
            "token id_token",
            "code token id_token",
        ],
        "grant_types_supported": ["authorization_code", "refresh_token", "password"],
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": [ALGORITHM],
        "token_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post"],
        "claims_supported": [
            "sub",
            "iss",
            "aud",
            "exp",
            "iat",
            "email",
            "email_verified",
            "name",
            "preferred_username",
            "roles",
        ],
        "code_challenge_methods_supported": ["S256"],
    }
