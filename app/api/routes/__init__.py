"""
API Routes
"""
from fastapi import APIRouter

from app.api.webhooks.whatsapp_cloud import router as whatsapp_cloud_router

router = APIRouter()

# Canonical webhook endpoint: /api/whatsapp-cloud/webhook
router.include_router(whatsapp_cloud_router, prefix="/whatsapp-cloud", tags=["webhooks"])
