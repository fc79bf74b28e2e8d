"""API route for URL reputation checks."""

from fastapi import APIRouter, Depends
from pydantic import AnyHttpUrl, BaseModel

from aegis.db.models import User
from aegis.schemas.common import ok
from aegis.services.auth import get_current_user
from aegis.services.url_reputation import get_url_classifier

router = APIRouter(prefix="/api/url", tags=["url"])


class ClassifyRequest(BaseModel):
    url: AnyHttpUrl


@router.post("/classify", summary="Classify a URL as safe or malicious")
async def classify_url(
    body: ClassifyRequest,
    user: User = Depends(get_current_user),
    classifier=Depends(get_url_classifier),
):
    return ok(await classifier.classify(str(body.url)))
