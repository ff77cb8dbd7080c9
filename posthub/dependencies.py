from fastapi import Header, HTTPException, Request

from posthub.container import Container
from posthub.schemas import Principal
from posthub.services.post_service import PostService


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_post_service(request: Request) -> PostService:
    return get_container(request).posts


def get_principal(
    x_user_id: int | None = Header(None, description="Authenticated user id, set by the identity layer."),
    x_user_role: str = Header("user", description="Authenticated user role."),
) -> Principal:
    """
    Authenticated caller for write routes.

    Token verification lives in the identity layer in front of this
    service; it forwards the verified principal as ``X-User-Id`` /
    ``X-User-Role``.  A request without it never reached that layer.
    """
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return Principal(id=x_user_id, role=x_user_role)
