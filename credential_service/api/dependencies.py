"""Route dependencies: hand routes the objects the app was built with.

The container lives on ``app.state`` (set by create_app), so routes
never import a client or a service at module level and tests can build
an app around any container they like.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from credential_service.container import ServiceContainer
from credential_service.services.credentials import CredentialService


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_service(
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> CredentialService:
    return container.service


ContainerDep = Annotated[ServiceContainer, Depends(get_container)]
ServiceDep = Annotated[CredentialService, Depends(get_service)]
