"""
Batch Loader

Loads many references in fixed-size groups. References inside a group run
concurrently; groups run one after another with a pause in between so the
storage host never sees more than `batch_size` requests from us at once.
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from .environment import Environment
from .errors import ImageLoadError
from .payload import ImagePayload
from .url_resolver import normalize_reference

logger = logging.getLogger(__name__)


class BatchLoader:
    """
    Usage:
        batch = BatchLoader(loader, environment)
        results = await batch.load_all(urls)   # {url: ImagePayload | None}
    """

    def __init__(
        self,
        loader,
        environment: Environment,
        batch_size: Optional[int] = None,
        batch_delay: Optional[float] = None,
    ):
        self.loader = loader
        self.environment = environment
        self.batch_size = environment.batch_size if batch_size is None else batch_size
        self.batch_delay = environment.batch_delay if batch_delay is None else batch_delay
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")

    def _dedupe(self, references: Iterable) -> Dict[str, List[str]]:
        """Group raw references by normalized key, keeping first-seen order."""
        groups: Dict[str, List[str]] = {}
        for ref in references:
            if not isinstance(ref, str) or not ref.strip():
                continue
            try:
                key = normalize_reference(ref, self.environment.page_origin) or ref.strip()
            except ImageLoadError:
                key = ref.strip()
            groups.setdefault(key, [])
            if ref not in groups[key]:
                groups[key].append(ref)
        return groups

    async def _load_one(self, reference: str) -> Optional[ImagePayload]:
        try:
            return await self.loader.load_or_none(reference)
        except Exception as e:
            logger.error(f"[BatchLoader] Error loading {reference[:60]}...: {e}")
            return None

    async def load_all(self, references: Iterable) -> Dict[str, Optional[ImagePayload]]:
        """
        Load every reference; failures map to None and never raise.

        Returns:
            Mapping of each input reference to its payload or None.
        """
        groups = self._dedupe(references)
        if not groups:
            return {}

        keys = list(groups)
        batches = [keys[i:i + self.batch_size] for i in range(0, len(keys), self.batch_size)]
        logger.info(
            f"[BatchLoader] Loading {len(keys)} images in {len(batches)} batches of {self.batch_size}"
        )

        results: Dict[str, Optional[ImagePayload]] = {}
        for index, batch in enumerate(batches):
            outcomes = await asyncio.gather(
                *(self._load_one(groups[key][0]) for key in batch),
                return_exceptions=True,
            )
            for key, outcome in zip(batch, outcomes):
                payload = None if isinstance(outcome, BaseException) else outcome
                for ref in groups[key]:
                    results[ref] = payload

            if index < len(batches) - 1 and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)

        success_count = sum(1 for key in keys if results[groups[key][0]] is not None)
        logger.info(f"[BatchLoader] Batch complete: {success_count}/{len(keys)} images loaded")
        return results
