"""
Product catalog endpoints - the hottest cached read path.

GET responses go through the local catalog cache (unfiltered listing only),
then the Redis response cache tagged "products". Every write invalidates the
tag and the writer's local entry.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from leadrelay.api.deps import get_container
from leadrelay.schemas.delivery import ProductCreate, ProductUpdate
from leadrelay.services.catalog_repository import CATALOG_LIST_PATH, PRODUCTS_TAG, catalog_listing
from leadrelay.services.container import ServiceContainer
from leadrelay.services.response_cache import acting_user, with_cache

logger = logging.getLogger(__name__)
router = APIRouter(prefix=CATALOG_LIST_PATH, tags=["products"])


def _local_catalog(request: Request):
    container = getattr(request.app.state, "container", None)
    return getattr(container, "catalog_cache", None)


async def _invalidate_catalog(container: ServiceContainer, user_id: str) -> None:
    removed = await container.response_cache.invalidate_by_tag(PRODUCTS_TAG)
    container.catalog_cache.invalidate(user_id)
    logger.debug("Catalog write by %s invalidated %d cached responses", user_id, removed)


@router.get("")
@with_cache(None, [PRODUCTS_TAG], local_cache=_local_catalog)
async def list_products(
    request: Request,
    category: Optional[str] = None,
    search: Optional[str] = None,
    container: ServiceContainer = Depends(get_container),
):
    products = await container.catalog.find(acting_user(request), category=category, search=search)
    return catalog_listing(products)


@router.get("/{product_id}")
@with_cache(None, [PRODUCTS_TAG])
async def get_product(
    request: Request,
    product_id: str,
    container: ServiceContainer = Depends(get_container),
):
    product = await container.catalog.get(acting_user(request), product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return product.to_dict()


@router.post("", status_code=201)
async def create_product(
    request: Request,
    body: ProductCreate,
    container: ServiceContainer = Depends(get_container),
):
    user_id = acting_user(request)
    product = await container.catalog.create(user_id, body.model_dump())
    await _invalidate_catalog(container, user_id)
    return product.to_dict()


@router.put("/{product_id}")
async def update_product(
    request: Request,
    product_id: str,
    body: ProductUpdate,
    container: ServiceContainer = Depends(get_container),
):
    user_id = acting_user(request)
    product = await container.catalog.update(user_id, product_id, body.model_dump(exclude_unset=True))
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    await _invalidate_catalog(container, user_id)
    return product.to_dict()


@router.delete("/{product_id}", status_code=204)
async def delete_product(
    request: Request,
    product_id: str,
    container: ServiceContainer = Depends(get_container),
):
    user_id = acting_user(request)
    if not await container.catalog.delete(user_id, product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    await _invalidate_catalog(container, user_id)
