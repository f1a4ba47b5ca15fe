"""
RAG Collection Export
=====================

Dumps a collection (typically a migration backup) to a JSON file.
Packed embeddings are written as base64 with their subtype.
"""

import base64
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .models import Experience
from .store import ExperienceStore

logger = logging.getLogger(__name__)


def experience_to_json(experience: Experience) -> Dict[str, Any]:
    """Full JSON-serialisable view of an experience, embeddings included."""
    data = experience.to_dict()

    legacy = experience.legacy_embedding
    data["embedding"] = list(legacy.values) if legacy is not None else None

    packed = experience.packed_embedding
    data["embedding_bin"] = (
        {
            "base64": base64.b64encode(packed.data).decode("ascii"),
            "subtype": f"{packed.subtype:02x}",
        }
        if packed is not None else None
    )
    return data


def export_collection(
    store: ExperienceStore,
    out_path: Union[str, Path],
    collection: Optional[str] = None,
    batch_size: int = 100,
) -> int:
    """
    Write every experience of a collection to ``out_path`` as a JSON array.

    Rows are streamed from the store and written one by one.

    Returns:
        Number of experiences exported
    """
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)

    count = 0
    with out_path.open("w", encoding="utf-8") as f:
        f.write("[")
        for experience in store.iter_experiences(collection=collection, batch_size=batch_size):
            if count:
                f.write(",")
            f.write("\n  ")
            f.write(json.dumps(experience_to_json(experience), ensure_ascii=False))
            count += 1
        f.write("\n]\n" if count else "]\n")

    logger.info(f"Exported {count} experiences from '{collection or store.collection}' to {out_path}")
    return count
