"""Issuance — roster ingestion, certificate assembly, proof embedding, batch pipeline."""

from certanchor.issuance.assembler import CertificateAssembler
from certanchor.issuance.embedder import embed
from certanchor.issuance.pipeline import (
    BatchRun,
    IssuancePipeline,
    load_certificate,
    write_certificates,
)
from certanchor.issuance.roster import RosterStore

__all__ = [
    "CertificateAssembler",
    "embed",
    "BatchRun",
    "IssuancePipeline",
    "load_certificate",
    "write_certificates",
    "RosterStore",
]
