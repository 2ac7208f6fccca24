from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Session
import models

WATERMARK_COLUMNS = {
    "products": "last_product_sync_at",
    "orders": "last_order_sync_at",
    "customers": "last_customer_sync_at",
}

def get_integration(db: Session, integration_id: int) -> Optional[models.ShopifyIntegration]:
    return db.query(models.ShopifyIntegration).filter(models.ShopifyIntegration.id == integration_id).first()

def get_active_integration(db: Session, organization_id: str, integration_id: int) -> Optional[models.ShopifyIntegration]:
    return db.query(models.ShopifyIntegration).filter(
        models.ShopifyIntegration.id == integration_id,
        models.ShopifyIntegration.organization_id == organization_id,
        models.ShopifyIntegration.is_active == True,  # noqa: E712
    ).first()

def get_watermark(integration: models.ShopifyIntegration, kind: str) -> Optional[datetime]:
    return getattr(integration, WATERMARK_COLUMNS[kind])

def set_watermark(db: Session, integration: models.ShopifyIntegration, kind: str, value: datetime) -> None:
    setattr(integration, WATERMARK_COLUMNS[kind], value)
    db.commit()

def create_integration(db: Session, organization_id: str, shop_domain: str, access_token: str,
                       webhook_secret: Optional[str] = None, scope: Optional[str] = None) -> models.ShopifyIntegration:
    integration = models.ShopifyIntegration(
        organization_id=organization_id,
        shop_domain=shop_domain,
        access_token=access_token,
        webhook_secret=webhook_secret,
        scope=scope,
    )
    db.add(integration)
    db.commit()
    db.refresh(integration)
    return integration
