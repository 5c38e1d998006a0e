#  Generation Broker - AI Model Routes
#
#  Read-only model lookups for clients building submission forms.
#
#  Depends on: container.py, services/ai_models.py
#  Used by:    app.py

from dependency_injector.wiring import inject, Provide
from fastapi import APIRouter, Depends, Path

from broker.container import Container
from broker.services.ai_models import AIModelCatalog

router = APIRouter(prefix="/models", tags=["models"])


@router.get("/{model_id}/parameters")
@inject
async def get_model_parameters(
    model_id: int = Path(..., ge=1),
    ai_models: AIModelCatalog = Depends(Provide[Container.ai_models]),
) -> dict:
    """Parameter schema of a model (served from cache when warm)."""
    return await ai_models.get_parameters(model_id)
