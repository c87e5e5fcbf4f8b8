"""Recipient roster — validated, order-preserving list of certificate recipients.

The roster is tabular input, one row per recipient:

    name,publicKey,identity
    Zhang San,ecdsa-koblitz-pubkey:mtr98kany9G1XYNU74pRnfBQmaCg2FZLmc,zs@example.org

Header row required, comma-delimited, UTF-8 (a BOM is tolerated). The
column ``pubkey`` is accepted as an alias of ``publicKey``. Extra columns
are kept and can fill extra template placeholders.

Invariants enforced:
- name, publicKey and identity are present and non-blank in every row.
- publicKey follows the key grammar: optional ``ecdsa-koblitz-pubkey:``
  scheme followed by a Bitcoin address, either base58 (1, 3, m, n, 2)
  or lowercase bech32 (bc1, tb1, bcrt1). Stored with the scheme.
- No two rows share a public key.
- Output order is input order; positions feed the Merkle proof paths.

Errors name the offending row. For CSV input that is the line number in
the file (header is line 1, blank lines counted).
"""

from __future__ import annotations

import csv
import io
import re
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from certanchor.errors import DuplicateRecipientError, MalformedRosterError
from certanchor.models.certificate import RosterEntry


PUBKEY_SCHEME = "ecdsa-koblitz-pubkey:"
PUBKEY_PATTERN = re.compile(
    r"^(?:ecdsa-koblitz-pubkey:)?"
    r"(?:[123mn][1-9A-HJ-NP-Za-km-z]{25,34}"
    r"|(?:bc|tb|bcrt)1[02-9ac-hj-np-z]{39,59})$"
)
REQUIRED_COLUMNS = ("name", "publicKey", "identity")
COLUMN_ALIASES = {"pubkey": "publicKey", "public_key": "publicKey"}


class RosterStore:
    """Validates raw recipient records into RosterEntry objects.

    Usage:
        entries = RosterStore().load_csv(Path("roster.csv"))
    """

    def load(
        self,
        raw_records: Iterable[Union[Mapping[str, Any], RosterEntry]],
        row_numbers: Optional[Sequence[int]] = None,
    ) -> list[RosterEntry]:
        """Validate records and return entries in input order.

        Row numbers in errors are 1-based positions within ``raw_records``
        unless ``row_numbers`` supplies one per record.

        Raises:
            MalformedRosterError: A row is missing a field or has a bad key.
            DuplicateRecipientError: Two rows share a public key.
        """
        entries: list[RosterEntry] = []
        first_row: dict[str, int] = {}
        for position, raw in enumerate(raw_records):
            row_number = row_numbers[position] if row_numbers is not None else position + 1
            record = raw.as_record() if isinstance(raw, RosterEntry) else raw
            if not isinstance(record, Mapping):
                raise MalformedRosterError("record is not a mapping", row=row_number)
            entry = self._parse_record(record, row_number)
            if entry.public_key in first_row:
                raise DuplicateRecipientError(
                    entry.public_key, [first_row[entry.public_key], row_number],
                )
            first_row[entry.public_key] = row_number
            entries.append(entry)
        return entries

    def load_csv_text(self, text: str) -> list[RosterEntry]:
        numbered = parse_roster_csv(text)
        return self.load(
            [record for _, record in numbered],
            row_numbers=[line for line, _ in numbered],
        )

    def load_csv(self, path: Path) -> list[RosterEntry]:
        if not path.exists():
            raise FileNotFoundError(f"Roster not found: {path}")
        return self.load_csv_text(path.read_text(encoding="utf-8-sig"))

    @staticmethod
    def _parse_record(record: Mapping[str, Any], row_number: int) -> RosterEntry:
        fields: dict[str, str] = {}
        for key, value in record.items():
            if key is None:
                raise MalformedRosterError("more values than header columns", row=row_number)
            name = COLUMN_ALIASES.get(str(key).strip(), str(key).strip())
            fields[name] = "" if value is None else str(value).strip()

        missing = [c for c in REQUIRED_COLUMNS if not fields.get(c)]
        if missing:
            raise MalformedRosterError(
                f"missing value(s) for {', '.join(missing)}", row=row_number,
            )

        public_key = fields.pop("publicKey")
        if not PUBKEY_PATTERN.match(public_key):
            raise MalformedRosterError(
                f"public key {public_key!r} does not match the key format", row=row_number,
            )
        if not public_key.startswith(PUBKEY_SCHEME):
            public_key = PUBKEY_SCHEME + public_key

        return RosterEntry(
            name=fields.pop("name"),
            public_key=public_key,
            identity=fields.pop("identity"),
            extra={k: v for k, v in fields.items() if k},
        )


def parse_roster_csv(text: str) -> list[tuple[int, dict[str, Any]]]:
    """Parse roster CSV text into (line number, raw record) pairs.

    Header row required. Rows with no values are skipped; the line
    numbers of the remaining rows are their lines in ``text``.
    """
    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
    header = [COLUMN_ALIASES.get(h.strip(), h.strip()) for h in (reader.fieldnames or [])]
    missing = [c for c in REQUIRED_COLUMNS if c not in header]
    if missing:
        raise MalformedRosterError(
            f"header row missing column(s): {', '.join(missing)}", row=0,
        )
    records: list[tuple[int, dict[str, Any]]] = []
    for row in reader:
        if any((v or "").strip() for v in row.values() if isinstance(v, str)):
            records.append((reader.line_num, row))
    return records
