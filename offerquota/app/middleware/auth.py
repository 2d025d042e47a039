import hmac
import os

from fastapi import Request

from offerquota.app.exceptions import AuthenticationError


def get_service_token() -> str:
    """Get the service-to-service token from the environment variable.

    The token is cached on first access to avoid repeated environment
    variable lookups and reduce timing attack window.

    Raises:
        ValueError: If SERVICE_TOKEN environment variable is not set
    """
    if not hasattr(get_service_token, "_cached_token"):
        token = os.getenv("SERVICE_TOKEN")
        if token is not None:
            # Normalize accidental whitespace/newline from env/secret stores.
            token = token.strip()
        if not token:
            raise ValueError(
                "SERVICE_TOKEN environment variable is not set. "
                "Please set a secure service token before starting the server."
            )
        get_service_token._cached_token = token
    return get_service_token._cached_token


def get_bearer_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header.

    Args:
        request: The incoming request

    Returns:
        The token string if present, None otherwise
    """
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.replace("Bearer ", "", 1).strip()


def require_service_token(request: Request) -> str:
    """Validate the service token for quota endpoints.

    Args:
        request: The incoming request

    Returns:
        Caller identifier if valid

    Raises:
        AuthenticationError: 401 if the token is missing or invalid
    """
    token = get_bearer_token(request)
    expected_token = get_service_token()

    # Always compare, even without a token, so timing does not leak which case failed
    if token is None:
        token = ""

    if not hmac.compare_digest(token.encode(), expected_token.encode()):
        raise AuthenticationError()

    return "service"
