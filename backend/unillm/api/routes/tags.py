from fastapi import APIRouter

from unillm.api.deps import DispatcherDep
from unillm.core.config import settings
from unillm.schemas import TagModel, TagsResponse, VersionResponse

router = APIRouter(tags=["tags"])


@router.get("/tags", response_model=TagsResponse)
async def list_models(dispatcher: DispatcherDep) -> TagsResponse:
    """One entry per registered model id."""
    return TagsResponse(
        models=[TagModel(name=m, model=m) for m in dispatcher.registry.model_ids()]
    )


@router.get("/version", response_model=VersionResponse)
async def version() -> VersionResponse:
    return VersionResponse(version=settings.OLLAMA_VERSION)
