"""Tender authoring services package."""

from .service import TenderAuthoringService, TenderStatus

__all__ = ["TenderAuthoringService", "TenderStatus"]
