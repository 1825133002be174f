#!/usr/bin/env python3
"""Caller configuration for a packing run.

Options can be given as a mapping (the keys used by build scripts), a JSON
file or a YAML file:

    {
      "privateKey":   "certs/key.pem",        # PKCS#8 private key
      "extensionCer": "certs/leaf.cer",       # developer certificate (DER)
      "appleDevCer":  "certs/apple-wwdr.cer", # intermediate CA
      "appleRootCer": "certs/apple-root.cer", # root CA
      "temp":         "/tmp"                  # optional, defaults to cwd
    }

Relative paths resolve against the directory of the options file.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from jsonschema import Draft202012Validator

OPTIONS_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "sxz pack options",
    "type": "object",
    "properties": {
        "privateKey": {"type": "string", "minLength": 1},
        "extensionCer": {"type": "string", "minLength": 1},
        "appleDevCer": {"type": "string", "minLength": 1},
        "appleRootCer": {"type": "string", "minLength": 1},
        "temp": {"type": ["string", "null"]},
    },
    "required": ["privateKey", "extensionCer", "appleDevCer", "appleRootCer"],
    "additionalProperties": False,
}

_FIELDS = {
    "privateKey": "private_key",
    "extensionCer": "extension_cer",
    "appleDevCer": "apple_dev_cer",
    "appleRootCer": "apple_root_cer",
    "temp": "temp",
}


class OptionsError(ValueError):
    """Raised when pack options are missing or malformed."""

    pass


def _format_schema_errors(errors) -> str:
    lines = []
    for err in errors:
        location = err.json_path if err.json_path != "$" else "options"
        lines.append(f"{location}: {err.message}")
    return "; ".join(lines)


def _resolve(value: Union[str, Path], base_dir: Optional[Path]) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute() and base_dir is not None:
        path = base_dir / path
    return path.absolute()


@dataclass(frozen=True)
class PackOptions:
    private_key: Path
    extension_cer: Path
    apple_dev_cer: Path
    apple_root_cer: Path
    temp: Optional[Path] = None

    @classmethod
    def from_mapping(
        cls, data: Mapping[str, Any], base_dir: Optional[Path] = None
    ) -> "PackOptions":
        """Validate ``data`` against :data:`OPTIONS_SCHEMA` and build options."""
        if not isinstance(data, Mapping):
            raise OptionsError("Options must be a mapping")
        plain = {k: str(v) if isinstance(v, Path) else v for k, v in data.items()}

        validator = Draft202012Validator(OPTIONS_SCHEMA)
        errors = sorted(validator.iter_errors(plain), key=lambda e: e.json_path)
        if errors:
            raise OptionsError(f"Invalid pack options: {_format_schema_errors(errors)}")

        kwargs = {}
        for key, attr in _FIELDS.items():
            value = plain.get(key)
            if value:
                kwargs[attr] = _resolve(value, base_dir)
        return cls(**kwargs)

    def to_mapping(self) -> Dict[str, Optional[str]]:
        return {key: (str(getattr(self, attr)) if getattr(self, attr) else None) for key, attr in _FIELDS.items()}

    @property
    def temp_dir(self) -> Path:
        return self.temp if self.temp is not None else Path.cwd()

    def certificate_chain(self) -> tuple[Path, Path, Path]:
        """Leaf, intermediate and root certificate paths."""
        return (self.extension_cer, self.apple_dev_cer, self.apple_root_cer)


def _load_yaml(text: str) -> Any:
    try:
        import yaml
    except Exception as exc:  # pragma: no cover - depends on optional dependency
        raise OptionsError(
            "PyYAML is required for YAML option files. Install with: pip install pyyaml"
        ) from exc
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise OptionsError(f"Invalid YAML in options file: {exc}") from exc


def load_options(path: Path) -> PackOptions:
    """Load options from a ``.json``, ``.yaml`` or ``.yml`` file."""
    path = Path(path)
    if not path.exists():
        raise OptionsError(f"Options file not found: {path}")
    text = path.read_text(encoding="utf-8")

    if path.suffix.lower() in {".yaml", ".yml"}:
        data = _load_yaml(text)
    else:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise OptionsError(f"Invalid JSON in options file {path}: {exc}") from exc

    return PackOptions.from_mapping(data or {}, base_dir=path.parent.absolute())


def merge_overrides(options: Optional[PackOptions], **overrides: Any) -> PackOptions:
    """Apply non-empty keyword overrides (attribute names) on top of ``options``."""
    data: Dict[str, Any] = dict(options.to_mapping()) if options else {}
    attr_to_key = {attr: key for key, attr in _FIELDS.items()}
    for attr, value in overrides.items():
        if attr not in attr_to_key:
            raise OptionsError(f"Unknown option: {attr}")
        if value is not None:
            data[attr_to_key[attr]] = str(value)
    data = {k: v for k, v in data.items() if v is not None}
    return PackOptions.from_mapping(data, base_dir=Path.cwd())
