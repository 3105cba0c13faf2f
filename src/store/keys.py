"""Store keys: a digest over what determines a build's output."""
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Dict

from versioning.models import PackageId

from builder.models import BuildConfig


@dataclass(frozen=True)
class StoreKey:
    """Package identifier + source content hash + build configuration.

    Equal inputs give an equal ``digest``; any change to one of the three
    gives a different one.
    """
    package_id: PackageId
    source_hash: str
    build_config: BuildConfig

    def canonical(self) -> Dict[str, Any]:
        return {
            "name": self.package_id.name,
            "version": str(self.package_id.version),
            "source_hash": self.source_hash,
            "build_config": self.build_config.canonical(),
        }

    @property
    def digest(self) -> str:
        payload = json.dumps(self.canonical(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def __str__(self) -> str:
        return self.digest
