"""
Read-through cache of the catalog fields the ledger consumes.

Snapshots are a convenience for presentation reads only. Ledger
mutations always lock and re-read the product row, and every committed
mutation (or catalog edit) drops the cached snapshot.
"""

import logging
import uuid

from django.conf import settings
from django.core.cache import cache
from django.db import transaction
from django.db.models.signals import post_delete, post_save
from django.dispatch import receiver

from common.errors import ProductNotFound
from inventory.models import Product

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TIMEOUT = 60


def _cache_key(product_id):
    return f"catalog:product:{product_id}"


def get_product(product_id):
    try:
        product_id = product_id if isinstance(product_id, uuid.UUID) else uuid.UUID(str(product_id))
    except (TypeError, ValueError):
        raise ProductNotFound(details={"product_id": str(product_id)})

    key = _cache_key(product_id)
    snapshot = cache.get(key)
    if snapshot is not None:
        return snapshot

    product = Product.objects.filter(id=product_id).values("id", "name", "quantity", "price", "min_stock").first()
    if product is None:
        raise ProductNotFound(details={"product_id": str(product_id)})

    snapshot = {
        "id": str(product["id"]),
        "name": product["name"],
        "quantity": product["quantity"],
        "price": str(product["price"]),
        "min_stock": product["min_stock"],
    }
    cache.set(key, snapshot, getattr(settings, "LEDGER_CACHE_TIMEOUT", DEFAULT_CACHE_TIMEOUT))
    return snapshot


def invalidate_product(product_id):
    cache.delete(_cache_key(product_id))


def invalidate_products_on_commit(product_ids):
    product_ids = list(product_ids)

    def _invalidate():
        cache.delete_many([_cache_key(product_id) for product_id in product_ids])

    transaction.on_commit(_invalidate)


@receiver(post_save, sender=Product, dispatch_uid="catalog_product_saved")
@receiver(post_delete, sender=Product, dispatch_uid="catalog_product_deleted")
def _drop_snapshot_on_catalog_change(sender, instance, **kwargs):
    logger.debug("catalog_snapshot_invalidated", extra={"product_id": str(instance.id)})
    invalidate_products_on_commit([instance.id])
