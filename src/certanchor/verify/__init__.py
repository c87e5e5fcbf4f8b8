"""Verification — three-way certificate checks against public chain data."""

from certanchor.verify.verifier import Verifier

__all__ = ["Verifier"]
