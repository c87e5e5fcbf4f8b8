"""Certificate data models: template, roster entry, unsigned and finished certificates.

Lifecycle within one batch run:
    Template + RosterEntry -> UnsignedCertificate -> (leaf, proof, anchor)
    -> BlockchainCertificate

Only BlockchainCertificate leaves the run; everything else is discarded
once the batch completes.
"""

from __future__ import annotations

import copy
import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from certanchor.errors import TemplateError


PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
SUPPORTED_SCHEMA_VERSIONS = ("1.0",)


@dataclass(frozen=True)
class Template:
    """A certificate skeleton with ``${field}`` placeholders.

    Immutable for the lifetime of a batch; assembly always works on a
    deep copy of ``document``.
    """
    document: Mapping[str, Any]
    schema_version: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Template:
        """Validate and wrap a template document.

        Raises:
            TemplateError: If the schema version is missing or unsupported,
                or the document is not an object.
        """
        if not isinstance(data, Mapping):
            raise TemplateError("Template must be a JSON object")
        version = data.get("schemaVersion")
        if version is None:
            raise TemplateError("Template missing 'schemaVersion' field")
        if version not in SUPPORTED_SCHEMA_VERSIONS:
            raise TemplateError(f"Unsupported template schemaVersion: {version!r}")
        for required in ("badge", "recipient", "recipientProfile"):
            if not isinstance(data.get(required), Mapping):
                raise TemplateError(f"Template '{required}' must be an object")
        return cls(document=copy.deepcopy(dict(data)), schema_version=version)

    @classmethod
    def from_file(cls, path: Path) -> Template:
        if not path.exists():
            raise FileNotFoundError(f"Template not found: {path}")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise TemplateError(f"Template {path} is not valid JSON: {exc}") from exc
        return cls.from_dict(data)

    def placeholders(self) -> set[str]:
        """Every placeholder name referenced anywhere in the document."""
        found: set[str] = set()
        _collect_placeholders(self.document, found)
        return found

    @property
    def issuer_id(self) -> Optional[str]:
        issuer = self.document.get("badge", {}).get("issuer", {})
        return issuer.get("id") if isinstance(issuer, Mapping) else None


def _collect_placeholders(value: Any, found: set[str]) -> None:
    if isinstance(value, str):
        found.update(PLACEHOLDER.findall(value))
    elif isinstance(value, Mapping):
        for item in value.values():
            _collect_placeholders(item, found)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _collect_placeholders(item, found)


@dataclass(frozen=True)
class RosterEntry:
    """One recipient. Never mutated after the roster is loaded."""
    name: str
    public_key: str
    identity: str
    extra: Mapping[str, str] = field(default_factory=dict)

    def placeholder_values(self) -> dict[str, str]:
        """Values this entry contributes to template placeholders."""
        values = dict(self.extra)
        values.update(name=self.name, publicKey=self.public_key, identity=self.identity)
        return values

    def as_record(self) -> dict[str, str]:
        record = dict(self.extra)
        record.update(name=self.name, publicKey=self.public_key, identity=self.identity)
        return record


@dataclass(frozen=True)
class UnsignedCertificate:
    """A template populated for one recipient, before anchoring."""
    certificate_id: str
    index: int
    recipient: RosterEntry
    document: Mapping[str, Any]

    @property
    def uuid(self) -> str:
        return self.certificate_id.removeprefix("urn:uuid:")


@dataclass(frozen=True)
class BlockchainCertificate:
    """The distributed artifact: certificate fields plus a signature block.

    The signature block follows the Blockcerts MerkleProof2017 layout:
    merkleRoot, targetHash, proof ([{"left": h} | {"right": h}]) and
    anchors ([{"sourceId": txid, "type": "BTCOpReturn", ...}]).
    """
    document: Mapping[str, Any]

    @property
    def certificate_id(self) -> str:
        return str(self.document.get("id", ""))

    @property
    def signature(self) -> Mapping[str, Any]:
        return self.document.get("signature", {})

    @property
    def txid(self) -> Optional[str]:
        anchors = self.signature.get("anchors") or []
        return anchors[0].get("sourceId") if anchors else None

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.document, indent=indent, ensure_ascii=False)

    @classmethod
    def from_file(cls, path: Path) -> BlockchainCertificate:
        return cls(document=json.loads(path.read_text(encoding="utf-8")))
