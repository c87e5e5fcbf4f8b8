"""Certificate template generation.

Builds a Blockcerts-style (Open Badges based) template from issuer
configuration. Recipient-specific values are left as placeholders:

    ${certificateId}  ${issuedOn}  ${name}  ${publicKey}  ${identity}
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from certanchor.config import IssuerConfig
from certanchor.models.certificate import Template


SCHEMA_VERSION = "1.0"
CONTEXT = [
    "https://w3id.org/openbadges/v2",
    "https://w3id.org/blockcerts/v2",
]


def build_template(config: IssuerConfig) -> dict[str, Any]:
    issuer_url = config.issuer_url.rstrip("/")
    return {
        "schemaVersion": SCHEMA_VERSION,
        "@context": list(CONTEXT),
        "type": "Assertion",
        "id": "${certificateId}",
        "issuedOn": "${issuedOn}",
        "recipient": {
            "type": "email",
            "identity": "${identity}",
            "hashed": False,
        },
        "recipientProfile": {
            "type": ["RecipientProfile", "Extension"],
            "name": "${name}",
            "publicKey": "${publicKey}",
        },
        "badge": {
            "type": "BadgeClass",
            "id": f"{issuer_url}/badges/{_slug(config.badge_name)}",
            "name": config.badge_name,
            "description": config.badge_description,
            "issuer": {
                "type": "Profile",
                "id": f"{issuer_url}/issuer.json",
                "name": config.issuer_name,
                "url": config.issuer_url,
                "email": config.issuer_email,
            },
        },
        "verification": {"type": ["MerkleProofVerification2017", "Extension"]},
    }


def write_template(config: IssuerConfig, path: Path) -> Template:
    document = build_template(config)
    template = Template.from_dict(document)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(document, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    return template


def _slug(text: str) -> str:
    return "-".join("".join(c if c.isalnum() else " " for c in text.lower()).split()) or "badge"
