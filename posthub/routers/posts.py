from fastapi import APIRouter, Depends, Response

from posthub.dependencies import get_post_service, get_principal
from posthub.schemas import PostCreate, PostRead, PostUpdate, Principal
from posthub.services.post_service import PostService

router = APIRouter(prefix="/api/v1/posts", tags=["posts"])

@router.get("", response_model=list[PostRead])
async def list_posts(service: PostService = Depends(get_post_service)):
    return await service.read_all()

@router.get("/{post_id}", response_model=PostRead)
async def get_post(post_id: int, service: PostService = Depends(get_post_service)):
    return await service.read(post_id)

@router.post("", status_code=201, response_model=PostRead)
async def create_post(
    data: PostCreate,
    principal: Principal = Depends(get_principal),
    service: PostService = Depends(get_post_service),
):
    return await service.create(data, principal)

@router.patch("/{post_id}", response_model=PostRead)
async def update_post(
    post_id: int,
    data: PostUpdate,
    principal: Principal = Depends(get_principal),
    service: PostService = Depends(get_post_service),
):
    return await service.update(post_id, data, principal)

@router.delete("/{post_id}", status_code=204)
async def delete_post(
    post_id: int,
    principal: Principal = Depends(get_principal),
    service: PostService = Depends(get_post_service),
):
    await service.delete(post_id, principal)
    return Response(status_code=204)
