"""
Local JSON persistence for enriched records and canonical roles.

Layout of the store directory::

    staging.jsonl   one enriched record per line
    live.jsonl      records promoted from staging
    roles.json      canonical general roles keyed by id
"""

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Sequence, Set

import numpy as np

from job_etl.models import EnrichedRecord, GeneralRoleLink, SimilarRole
from job_etl.utils.errors import MigrationError
from job_etl.utils.logging import get_logger

logger = get_logger(__name__)


def _normalise_title(title: str) -> str:
    return " ".join(title.lower().split())


class LocalJsonStore:
    """
    Batch sink, live migrator, role resolver and similar-role finder
    backed by files in one directory.

    A canonical role's embedding is the mean of the job embeddings of the
    records linked to it, so roles become searchable once records that
    use them are stored.
    """

    def __init__(self, directory: Path, similarity_threshold: float = 0.5) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.staging_path = self.directory / "staging.jsonl"
        self.live_path = self.directory / "live.jsonl"
        self.roles_path = self.directory / "roles.json"
        self.similarity_threshold = similarity_threshold

        self._roles: Dict[str, Dict[str, Any]] = self._load_roles()
        self._staged_ids: Set[str] = {row["detail"]["id"] for row in self._read_lines(self.staging_path)}
        self._roles_dirty = False

        logger.info(
            f"Opened local store at {self.directory}",
            extra={"roles": len(self._roles), "staged": len(self._staged_ids)},
        )

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    def _load_roles(self) -> Dict[str, Dict[str, Any]]:
        if not self.roles_path.exists():
            return {}
        with open(self.roles_path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _save_roles(self) -> None:
        with open(self.roles_path, "w", encoding="utf-8") as f:
            json.dump(self._roles, f, indent=2)
        self._roles_dirty = False

    @staticmethod
    def _read_lines(path: Path) -> List[Dict[str, Any]]:
        if not path.exists():
            return []
        with open(path, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]

    @staticmethod
    def _append_lines(path: Path, records: Sequence[EnrichedRecord]) -> None:
        lines = [record.model_dump_json() for record in records]
        with open(path, "a", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")

    def read_staging(self) -> List[Dict[str, Any]]:
        return self._read_lines(self.staging_path)

    def read_live(self) -> List[Dict[str, Any]]:
        return self._read_lines(self.live_path)

    @property
    def roles(self) -> List[Dict[str, Any]]:
        return list(self._roles.values())

    # -------------------------------------------------------------------------
    # Batch sink / live migrator
    # -------------------------------------------------------------------------

    async def store_batch(self, records: Sequence[EnrichedRecord]) -> None:
        """Append a batch to staging and fold job embeddings into linked roles."""
        if not records:
            return
        self._append_lines(self.staging_path, records)
        self._staged_ids.update(record.id for record in records)

        for record in records:
            job_vector = record.embeddings.job if record.embeddings else record.detail.embedding
            if record.general_role and job_vector:
                self._fold_embedding(record.general_role.id, job_vector)
        if self._roles_dirty:
            self._save_roles()

        logger.debug(f"Stored {len(records)} records in staging")

    async def migrate_batch_to_live(self, records: Sequence[EnrichedRecord]) -> None:
        """Copy staged records to the live store."""
        missing = [record.id for record in records if record.id not in self._staged_ids]
        if missing:
            raise MigrationError(
                f"{len(missing)} record(s) are not in staging",
                details={"missing": missing},
            )
        self._append_lines(self.live_path, records)
        logger.debug(f"Migrated {len(records)} records to live")

    # -------------------------------------------------------------------------
    # Canonical roles
    # -------------------------------------------------------------------------

    async def get_or_create_canonical_role(self, title: str, description: str = "") -> GeneralRoleLink:
        key = _normalise_title(title)
        for role in self._roles.values():
            if _normalise_title(role["title"]) == key:
                return GeneralRoleLink(id=role["id"], title=role["title"], description=role["description"])

        role_id = str(uuid.uuid4())
        self._roles[role_id] = {
            "id": role_id,
            "title": title.strip(),
            "description": description,
            "embedding": None,
            "listing_count": 0,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        self._save_roles()
        logger.info(f"Created canonical role '{title}' ({role_id})")
        return GeneralRoleLink(id=role_id, title=title.strip(), description=description, created=True)

    def _fold_embedding(self, role_id: str, vector: Sequence[float]) -> None:
        role = self._roles.get(role_id)
        if role is None:
            return
        count = role.get("listing_count", 0)
        new = np.asarray(vector, dtype=float)
        if role.get("embedding") and count:
            current = np.asarray(role["embedding"], dtype=float)
            if current.shape == new.shape:
                new = (current * count + new) / (count + 1)
        role["embedding"] = new.tolist()
        role["listing_count"] = count + 1
        self._roles_dirty = True

    async def find_similar_canonical_roles(
        self, embedding: Sequence[float], limit: int = 5
    ) -> List[SimilarRole]:
        """Roles whose embedding has cosine similarity >= threshold, best first."""
        query = np.asarray(embedding, dtype=float)
        query_norm = np.linalg.norm(query)
        candidates = [
            role
            for role in self._roles.values()
            if role.get("embedding") and len(role["embedding"]) == len(query)
        ]
        if not candidates or query_norm == 0:
            return []

        matrix = np.asarray([role["embedding"] for role in candidates], dtype=float)
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0] = np.inf
        scores = matrix @ query / (norms * query_norm)

        ranked = np.argsort(-scores)
        results = []
        for index in ranked:
            score = float(scores[index])
            if score < self.similarity_threshold or len(results) >= limit:
                break
            role = candidates[index]
            results.append(
                SimilarRole(
                    id=role["id"],
                    name=role["title"],
                    description=role["description"],
                    similarity=min(max(score, -1.0), 1.0),
                )
            )
        return results

    async def close(self) -> None:
        if self._roles_dirty:
            self._save_roles()
        logger.debug(f"Closed local store at {self.directory}")
