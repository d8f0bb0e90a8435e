"""
images.py — Product Image Management

Keeps a product's image list ordered, capped at MAX_IMAGES, and with exactly
one primary image whenever the list is not empty. Files go to the object
storage collaborator, rows to the data store.
"""

import logging
from typing import List, Optional

from .authorization import MANAGE_PRODUCTS, require
from .clients import StorageClient
from .errors import Forbidden, ImageLimitExceeded, ImageNotFound, ProductNotFound, upstream_call
from .models import CurrentUser, Product, ProductImage, Role
from .store import MarketplaceStore

MAX_IMAGES = 5

log = logging.getLogger(__name__)


class ProductImageManager:
    def __init__(self, store: MarketplaceStore, storage: StorageClient):
        self.store = store
        self.storage = storage

    def _owned_product(self, user: CurrentUser, product_id: str) -> Product:
        require(user, MANAGE_PRODUCTS)
        product = self.store.get_product(product_id)
        if product is None:
            raise ProductNotFound(product_id)
        if user.role != Role.ADMIN and product.producer_id != user.id:
            raise Forbidden(user.id, f"manage images of {product_id}")
        return product

    def list_images(self, product_id: str) -> List[ProductImage]:
        with upstream_call("data store", f"[Product: {product_id}]"):
            return self.store.list_product_images(product_id)

    def add_image(self, user: CurrentUser, product_id: str, filename: str, content: bytes,
                  content_type: str, alt_text: Optional[str] = None) -> ProductImage:
        """
        Uploads an image and appends it to the product's list.

        The first image of a product becomes its primary image.

        Raises:
            ImageLimitExceeded: If the product already has MAX_IMAGES images.
            UpstreamUnavailable: If storage or the data store fails.
        """
        log_prefix = f"[Product: {product_id}]"
        with upstream_call("data store", log_prefix):
            product = self._owned_product(user, product_id)
            images = self.store.list_product_images(product_id)
        if len(images) >= MAX_IMAGES:
            raise ImageLimitExceeded(product_id, MAX_IMAGES)

        with upstream_call("object storage", log_prefix):
            url = self.storage.upload(product.producer_id, filename, content, content_type)
        with upstream_call("data store", log_prefix):
            image = self.store.insert_product_image(ProductImage(
                product_id=product_id,
                image_url=url,
                is_primary=not images,
                sort_order=len(images),
                alt_text=alt_text,
            ))
        log.info(f"{log_prefix} Image {image.id} added ({len(images) + 1}/{MAX_IMAGES}).")
        return image

    def set_primary(self, user: CurrentUser, product_id: str, image_id: str) -> List[ProductImage]:
        with upstream_call("data store", f"[Product: {product_id}]"):
            self._owned_product(user, product_id)
            images = self.store.list_product_images(product_id)
            if image_id not in {i.id for i in images}:
                raise ImageNotFound(image_id)
            for image in images:
                primary = image.id == image_id
                if image.is_primary != primary:
                    image.is_primary = primary
                    self.store.update_product_image(image)
        return images

    def remove_image(self, user: CurrentUser, product_id: str, image_id: str) -> List[ProductImage]:
        """Deletes an image row, compacts the sort order and re-elects a primary if needed."""
        with upstream_call("data store", f"[Product: {product_id}]"):
            self._owned_product(user, product_id)
            images = self.store.list_product_images(product_id)
            if image_id not in {i.id for i in images}:
                raise ImageNotFound(image_id)
            self.store.delete_product_image(image_id)
            remaining = [i for i in images if i.id != image_id]
            has_primary = any(i.is_primary for i in remaining)
            for position, image in enumerate(remaining):
                primary = image.is_primary or (not has_primary and position == 0)
                if image.sort_order != position or image.is_primary != primary:
                    image.sort_order = position
                    image.is_primary = primary
                    self.store.update_product_image(image)
        return remaining
