"""
Document storage for templates, mapping overrides and generated documents.

The pipeline only depends on three operations: fetch a template's bytes, read
its optional mapping overrides, and store a generated document in exchange
for a long-lived link. LocalDocumentStore implements them on the filesystem.
"""

import os
import time
from pathlib import Path
from typing import Dict, List, Any, Optional
from loguru import logger

from registry_filler.utils import ensure_directory_exists, load_json_safely


class LocalDocumentStore:
    """Filesystem-backed document store rooted at config['storage_root']."""

    def __init__(self, config: Dict[str, Any]):
        self.root = Path(config.get('storage_root', 'output'))
        self.url_ttl_seconds = int(config.get('signed_url_ttl_seconds', 0))

    def fetch_template(self, template_path: str) -> bytes:
        """
        Read a template PDF.

        Raises:
            FileNotFoundError: when the template does not exist
            ValueError: when the template file is empty
        """
        path = Path(template_path)
        if not path.is_file():
            raise FileNotFoundError(f"Template not found: {template_path}")

        content = path.read_bytes()
        if not content:
            raise ValueError(f"Template file is empty: {template_path}")

        logger.debug(f"Fetched template {template_path} ({len(content)} bytes)")
        return content

    def load_mapping_overrides(self, overrides_path: Optional[str]) -> Dict[str, List[str]]:
        """Read per-template mapping overrides; a missing file means no overrides."""
        if not overrides_path or not os.path.exists(overrides_path):
            return {}

        overrides = load_json_safely(overrides_path)
        if overrides is None:
            raise ValueError(f"Mapping overrides file is not valid JSON: {overrides_path}")
        if not isinstance(overrides, dict):
            raise ValueError(f"Mapping overrides must be a JSON object: {overrides_path}")
        return overrides

    def store_generated(self, request_id: str, pdf_bytes: bytes,
                        file_name: str = "generated.pdf") -> Dict[str, Any]:
        """
        Persist a generated document.

        Returns:
            Dictionary with the stored "path", a "url" and its "expires_at"
            epoch timestamp
        """
        target_dir = self.root / request_id
        ensure_directory_exists(str(target_dir))
        target = target_dir / file_name
        target.write_bytes(pdf_bytes)

        logger.info(f"Stored generated document: {target}")
        return {
            "path": str(target),
            "url": self.signed_url(str(target)),
            "expires_at": int(time.time()) + self.url_ttl_seconds,
        }

    def signed_url(self, path: str) -> str:
        """Local files need no signature; the URL is the absolute file URI."""
        return Path(path).resolve().as_uri()
