"""Principal extraction.

Authentication happens in the proxy in front of the service, which forwards the
authenticated principal's stable ID in a header.
"""

from fastapi import Depends, Request

from chatline.errors import UnauthenticatedError
from chatline.services import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_principal(request: Request, services: Services = Depends(get_services)) -> str:
    """Return the caller's external principal ID or raise ``UnauthenticatedError``."""
    principal = request.headers.get(services.config.auth_header, "").strip()
    if principal:
        return principal
    if services.config.dev_principal:
        return services.config.dev_principal
    raise UnauthenticatedError("Authentication required.")
