"""
Template persistence: one JSON document per template on a storage backend.

Local runs keep templates under ``config.templates_dir``; with
``TEMPLATE_BUCKET`` set they live in GCS under the ``templates/`` prefix.
"""
from __future__ import annotations
import json
from typing import List, Optional

from pydantic import ValidationError

from core.logger import get_logger
from core.storage import GCSStorage, StorageBackend, get_storage_backend
from models.template import BankTemplate

log = get_logger("templates/store")

GCS_PREFIX = "templates/"
SUFFIX = ".json"


class TemplateStore:
    """Reads and writes ``BankTemplate`` documents through a ``StorageBackend``."""

    def __init__(self, backend: Optional[StorageBackend] = None, prefix: Optional[str] = None):
        self.backend = backend or get_storage_backend()
        if prefix is None:
            prefix = GCS_PREFIX if isinstance(self.backend, GCSStorage) else ""
        self.prefix = prefix

    def _key(self, template_id: str) -> str:
        return f"{self.prefix}{template_id}{SUFFIX}"

    def load_all(self) -> List[BankTemplate]:
        """
        Every stored template, in key order.

        Documents that fail to parse are skipped and logged; a backend
        failure propagates.
        """
        templates: List[BankTemplate] = []
        keys = [k for k in self.backend.list_keys(self.prefix) if k.endswith(SUFFIX)]

        for key in keys:
            try:
                payload = json.loads(self.backend.read_bytes(key).decode("utf-8"))
                templates.append(BankTemplate.model_validate(payload))
            except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as e:
                log.warning(f"Skipping unreadable template document: key={key} error={type(e).__name__}: {e}")

        log.info(f"Loaded templates from storage: count={len(templates)} skipped={len(keys) - len(templates)}")
        return templates

    def save(self, template: BankTemplate) -> str:
        data = template.model_dump_json(indent=2).encode("utf-8")
        location = self.backend.write_bytes(self._key(template.id), data)
        log.info(f"Saved template: id={template.id} bank={template.bankName} location={location}")
        return location

    def update(self, template: BankTemplate) -> str:
        """Overwrite the stored document of an existing template."""
        data = template.model_dump_json(indent=2).encode("utf-8")
        location = self.backend.write_bytes(self._key(template.id), data)
        log.debug(
            f"Updated template: id={template.id} usage={template.usageCount} "
            f"accuracy={template.avgAccuracy:.3f} verified={template.isVerified}"
        )
        return location

    def delete(self, template_id: str) -> None:
        self.backend.delete(self._key(template_id))
        log.info(f"Deleted template: id={template_id}")
