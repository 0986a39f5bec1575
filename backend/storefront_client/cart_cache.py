# storefront_client/cart_cache.py
# ============================================================================
# STREETWEAR STOREFRONT — CLIENT CART CACHE
# ============================================================================
# Local cart kept by a storefront client between visits. One JSON file per
# user (file name is a hash of the user id) under a cache directory.
# Loaded when a session starts, saved after every change, cleared once a
# checkout has been handed to the server. A corrupt file is discarded.
# ============================================================================

import hashlib
import json
import os
from pathlib import Path
from typing import List, Optional, Union

import structlog
from pydantic import TypeAdapter, ValidationError

from schemas.checkout_models import CartLineRequest

logger = structlog.get_logger().bind(component="cart_cache")

_LINES = TypeAdapter(List[CartLineRequest])


class CartCache:

    def __init__(self, cache_dir: Optional[Union[str, Path]] = None):
        self.cache_dir = Path(cache_dir or os.getenv("STOREFRONT_CART_DIR", ".storefront/carts"))

    def _path(self, user_id: str) -> Path:
        digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()
        return self.cache_dir / f"{digest}.json"

    def load(self, user_id: str) -> List[CartLineRequest]:
        path = self._path(user_id)
        if not path.exists():
            return []
        try:
            return _LINES.validate_json(path.read_bytes())
        except ValidationError as e:
            logger.warning("cart_cache_corrupt", path=str(path), error=str(e))
            path.unlink(missing_ok=True)
            return []

    def save(self, user_id: str, lines: List[CartLineRequest]) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(user_id)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(
            json.dumps([line.model_dump(mode="json") for line in lines]),
            encoding="utf-8",
        )
        tmp.replace(path)

    def clear(self, user_id: str) -> None:
        self._path(user_id).unlink(missing_ok=True)

    def add(self, user_id: str, variant_id: str, quantity: int = 1) -> List[CartLineRequest]:
        """Add a variant; an existing line for the same variant is incremented."""
        if quantity <= 0:
            raise ValueError("Quantity must be positive")

        lines = self.load(user_id)
        for i, line in enumerate(lines):
            if line.variant_id == variant_id:
                lines[i] = line.model_copy(update={"quantity": (line.quantity or 0) + quantity})
                break
        else:
            lines.append(CartLineRequest(variant_id=variant_id, quantity=quantity))

        self.save(user_id, lines)
        return lines

    def update_quantity(self, user_id: str, variant_id: str, quantity: int) -> List[CartLineRequest]:
        """Set a line's quantity; zero or less removes the line."""
        lines = self.load(user_id)
        if quantity <= 0:
            lines = [line for line in lines if line.variant_id != variant_id]
        else:
            lines = [
                line.model_copy(update={"quantity": quantity}) if line.variant_id == variant_id else line
                for line in lines
            ]
        self.save(user_id, lines)
        return lines
