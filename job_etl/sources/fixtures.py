"""
File-backed acquisition source and reference-set loaders.

A listings file is a JSON array (or an object with a ``listings`` array)
of listing objects using the ``ListingDetail`` field names. A listing may
carry ``fetch_error`` to simulate a listing whose details cannot be
fetched.
"""

import json
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from pydantic import ValidationError

from job_etl.models import ListingDetail, ListingReference, ReferenceCapability, TaxonomyGroup
from job_etl.utils.errors import AcquisitionError, ConfigurationError
from job_etl.utils.logging import get_logger

logger = get_logger(__name__)


def _read_json(path: Path) -> Any:
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"File not found: {path}", {"path": str(path)})
    with open(path, "r", encoding="utf-8") as f:
        try:
            return json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {path}: {e.msg}", {"path": str(path)}) from e


def _items(data: Any, key: str) -> List[Dict[str, Any]]:
    if isinstance(data, dict):
        data = data.get(key, [])
    if not isinstance(data, list):
        raise ConfigurationError(f"Expected a list of {key}")
    return data


class JsonFixtureSource:
    """Acquisition source serving listings recorded in a JSON file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._listings: Dict[str, Dict[str, Any]] = {}
        for raw in _items(_read_json(self.path), "listings"):
            if "id" not in raw:
                raise ConfigurationError(f"Listing without an id in {self.path}")
            self._listings[str(raw["id"])] = raw
        logger.info(f"Loaded {len(self._listings)} listings from {self.path}")

    def __len__(self) -> int:
        return len(self._listings)

    async def list_references(self, limit: Optional[int] = None) -> AsyncIterator[ListingReference]:
        for count, raw in enumerate(self._listings.values()):
            if limit is not None and count >= limit:
                break
            yield ListingReference(
                id=str(raw["id"]),
                url=raw.get("url", ""),
                title=raw.get("title", ""),
                organization=raw.get("organization"),
                location=raw.get("location"),
                posted_date=raw.get("posted_date"),
            )

    async def fetch_detail(self, reference: ListingReference) -> ListingDetail:
        raw = self._listings.get(reference.id)
        if raw is None:
            raise AcquisitionError(f"Unknown listing {reference.id}", item_id=reference.id)
        if raw.get("fetch_error"):
            raise AcquisitionError(str(raw["fetch_error"]), item_id=reference.id)
        fields = {k: v for k, v in raw.items() if k != "fetch_error"}
        fields["id"] = reference.id
        try:
            return ListingDetail.model_validate(fields)
        except ValidationError as e:
            raise AcquisitionError(
                f"Listing {reference.id} is malformed: {e.error_count()} validation error(s)",
                item_id=reference.id,
            ) from e


def load_capabilities(path: Path) -> List[ReferenceCapability]:
    """Load the capability framework from a JSON file."""
    return [ReferenceCapability.model_validate(item) for item in _items(_read_json(path), "capabilities")]


def load_taxonomies(path: Path) -> List[TaxonomyGroup]:
    """Load taxonomy groups from a JSON file."""
    return [TaxonomyGroup.model_validate(item) for item in _items(_read_json(path), "taxonomies")]
