"""Certificate assembler — merges a template with each roster entry.

Assembly is a pure function of (template, entry, batch epoch): re-running
it for the same inputs yields byte-identical certificates with identical
identifiers. The identifier is a UUIDv5 of ``identity|epoch`` in a
namespace derived from the template's issuer id, so two issuers never
collide and one issuer never reuses an id across batches.

Batches are assembled on a thread pool. The only shared state is the
read-only template; results are put back in roster order.
"""

from __future__ import annotations

import copy
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from certanchor.errors import MissingFieldError
from certanchor.models.certificate import (
    PLACEHOLDER,
    RosterEntry,
    Template,
    UnsignedCertificate,
)

logger = logging.getLogger(__name__)


DEFAULT_NAMESPACE = uuid.UUID("6f2c3b1e-4a53-5b0c-9a6e-3c1d2e7f8a90")
RUN_TIMESTAMP_FIELD = "issuanceRunTimestamp"


@dataclass(frozen=True)
class AssemblyFailure:
    index: int
    identity: str
    error: str


class CertificateAssembler:
    """Produces one UnsignedCertificate per roster entry.

    Usage:
        assembler = CertificateAssembler(template, batch_epoch="2026-10-19T00:00:00Z")
        certificates, failures = assembler.assemble_batch(entries)
    """

    def __init__(
        self,
        template: Template,
        batch_epoch: str,
        namespace: Optional[uuid.UUID] = None,
        stamp_run_time: bool = False,
    ) -> None:
        self._template = template
        self._epoch = batch_epoch
        if namespace is None:
            namespace = (
                uuid.uuid5(uuid.NAMESPACE_URL, template.issuer_id)
                if template.issuer_id else DEFAULT_NAMESPACE
            )
        self._namespace = namespace
        self._stamp_run_time = stamp_run_time

    @property
    def batch_epoch(self) -> str:
        return self._epoch

    def certificate_id(self, entry: RosterEntry) -> str:
        return f"urn:uuid:{uuid.uuid5(self._namespace, f'{entry.identity}|{self._epoch}')}"

    def assemble(self, entry: RosterEntry, index: int = 0) -> UnsignedCertificate:
        """Fill the template for one recipient.

        Raises:
            MissingFieldError: A template placeholder has no value.
        """
        certificate_id = self.certificate_id(entry)
        values = entry.placeholder_values()
        values.setdefault("certificateId", certificate_id)
        values.setdefault("issuedOn", self._epoch)

        missing = self._template.placeholders() - values.keys()
        if missing:
            raise MissingFieldError(missing, identity=entry.identity)

        document = _substitute(copy.deepcopy(dict(self._template.document)), values)
        document["id"] = certificate_id
        if self._stamp_run_time:
            document[RUN_TIMESTAMP_FIELD] = datetime.now(timezone.utc).strftime(
                "%Y-%m-%dT%H:%M:%SZ"
            )
        return UnsignedCertificate(
            certificate_id=certificate_id,
            index=index,
            recipient=entry,
            document=document,
        )

    def assemble_batch(
        self,
        entries: Sequence[RosterEntry],
        max_workers: Optional[int] = None,
    ) -> tuple[list[UnsignedCertificate], list[AssemblyFailure]]:
        """Assemble every entry; failures abort only the affected certificate."""
        results: dict[int, UnsignedCertificate] = {}
        failures: list[AssemblyFailure] = []
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            futures = {
                pool.submit(self.assemble, entry, index): index
                for index, entry in enumerate(entries)
            }
            for future, index in futures.items():
                try:
                    results[index] = future.result()
                except MissingFieldError as exc:
                    logger.error("Assembly failed for %s: %s", entries[index].identity, exc)
                    failures.append(AssemblyFailure(index, entries[index].identity, str(exc)))
        certificates = [results[i] for i in sorted(results)]
        logger.info(
            "Assembled %d certificate(s), %d failure(s)", len(certificates), len(failures),
        )
        return certificates, sorted(failures, key=lambda f: f.index)


def _substitute(value: Any, values: dict[str, str]) -> Any:
    if isinstance(value, str):
        return PLACEHOLDER.sub(lambda m: values[m.group(1)], value)
    if isinstance(value, dict):
        return {k: _substitute(v, values) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute(v, values) for v in value]
    return value
