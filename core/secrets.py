from __future__ import annotations

import base64
import binascii
import os
import re
from pathlib import Path
from typing import Optional

from core.app_config import EnvSecret, FileSecret, InlineSecret, SecretSpec
from core.errors import ConfigurationError

_WHITESPACE_RE = re.compile(r"\s+")


def resolve_secret(
    spec: Optional[SecretSpec],
    *,
    label: str,
    base_dir: Path,
) -> Optional[str]:
    """Resolve a secret reference to its value.

    Plain strings and ``{value=...}`` are inline. ``{env=...}`` reads an
    environment variable, ``{path=...}`` reads a file relative to ``base_dir``
    (optionally base64). Optional references resolve to None when absent.
    """
    if spec is None:
        return None
    if isinstance(spec, str):
        return spec
    if isinstance(spec, InlineSecret):
        return spec.value
    if isinstance(spec, EnvSecret):
        value = os.environ.get(spec.env)
        if value is None or value == "":
            if spec.optional:
                return None
            raise ConfigurationError(f"Environment variable '{spec.env}' required for {label}")
        return value
    if isinstance(spec, FileSecret):
        path = (base_dir / spec.path).resolve()
        if not path.is_file():
            if spec.optional:
                return None
            raise ConfigurationError(f"Secret file not found for {label}: {path}")
        contents = path.read_text(encoding="utf-8")
        if spec.encoding == "base64":
            try:
                return base64.b64decode(_WHITESPACE_RE.sub("", contents), validate=True).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError) as exc:
                raise ConfigurationError(f"Secret file for {label} is not valid base64: {path}") from exc
        return contents
    raise ConfigurationError(f"Unsupported secret definition for {label}")
