"""
External collaborators consumed by the pipeline.

The engine never implements storage, KYC or sanctions data itself. These
interfaces describe what it needs; the in-memory versions back local runs
and tests.
"""
import hashlib
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import uuid4

from .errors import InfrastructureError, NotFoundError
from .name_matching import name_similarity


# =============================================================================
# VALUE OBJECTS
# =============================================================================

@dataclass(frozen=True)
class RefundHistoryEntry:
    """A prior refund request by the same stakeholder."""
    transaction_id: str
    amount: Decimal
    requested_at: datetime


@dataclass
class StakeholderProfile:
    stakeholder_id: str
    full_name: str
    kyc_status: str = "VERIFIED"
    risk_category: str = "low"  # low, medium, high
    payout_accounts: List[str] = field(default_factory=list)  # KYC-verified accounts
    source_accounts: Dict[str, str] = field(default_factory=dict)  # transaction_id -> paying account
    date_of_birth: Optional[date] = None
    declared_annual_income: Optional[Decimal] = None
    resident: bool = True
    jurisdiction: str = "IN"
    adverse_media: bool = False
    history: List[RefundHistoryEntry] = field(default_factory=list)

    def source_account_for(self, transaction_id: str) -> Optional[str]:
        if transaction_id in self.source_accounts:
            return self.source_accounts[transaction_id]
        return self.payout_accounts[0] if self.payout_accounts else None


@dataclass(frozen=True)
class StoredDocument:
    evidence_id: str
    content: bytes
    metadata: Dict[str, str]
    sha256: str


@dataclass(frozen=True)
class CandidateMatch:
    """One sanctions/PEP list hit returned by the provider."""
    name: str
    list_name: str  # UN, OFAC, EU, DOMESTIC, PEP
    date_of_birth: Optional[date] = None
    score: float = 0.0

    @property
    def is_pep(self) -> bool:
        return self.list_name == "PEP"


# =============================================================================
# INTERFACES
# =============================================================================

class StakeholderRegistry(ABC):
    """Read-only KYC lookup."""

    @abstractmethod
    def lookup(self, stakeholder_id: str) -> StakeholderProfile:
        ...


class DocumentStore(ABC):
    @abstractmethod
    def put(self, content: bytes, metadata: Dict[str, str]) -> str:
        ...

    @abstractmethod
    def get(self, evidence_id: str) -> StoredDocument:
        ...

    @abstractmethod
    def verify_integrity(self, evidence_id: str) -> bool:
        ...


class SanctionsListProvider(ABC):
    """Periodically refreshed sanctions/PEP lists. Possibly stale."""

    @property
    @abstractmethod
    def version(self) -> str:
        ...

    @abstractmethod
    def match_name(self, name: str, date_of_birth: Optional[date] = None) -> List[CandidateMatch]:
        ...


@dataclass
class Collaborators:
    registry: StakeholderRegistry
    documents: DocumentStore
    sanctions: SanctionsListProvider

    @classmethod
    def in_memory(cls) -> "Collaborators":
        return cls(
            registry=InMemoryStakeholderRegistry(),
            documents=InMemoryDocumentStore(),
            sanctions=InMemorySanctionsList(),
        )


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryStakeholderRegistry(StakeholderRegistry):
    def __init__(self, profiles: Optional[List[StakeholderProfile]] = None):
        self._profiles = {p.stakeholder_id: p for p in profiles or []}

    def add(self, profile: StakeholderProfile) -> None:
        self._profiles[profile.stakeholder_id] = profile

    def lookup(self, stakeholder_id: str) -> StakeholderProfile:
        profile = self._profiles.get(stakeholder_id)
        if profile is None:
            raise NotFoundError(f"Unknown stakeholder {stakeholder_id}")
        return profile


class InMemoryDocumentStore(DocumentStore):
    """Keeps content with its SHA-256 at upload so tampering is detectable."""

    def __init__(self):
        self._documents: Dict[str, StoredDocument] = {}
        self._lock = threading.Lock()

    def put(self, content: bytes, metadata: Dict[str, str]) -> str:
        evidence_id = str(uuid4())
        document = StoredDocument(
            evidence_id=evidence_id,
            content=content,
            metadata=dict(metadata),
            sha256=hashlib.sha256(content).hexdigest(),
        )
        with self._lock:
            self._documents[evidence_id] = document
        return evidence_id

    def get(self, evidence_id: str) -> StoredDocument:
        with self._lock:
            document = self._documents.get(evidence_id)
        if document is None:
            raise InfrastructureError(f"Document {evidence_id} not found in store", "document_store.get")
        return document

    def verify_integrity(self, evidence_id: str) -> bool:
        document = self.get(evidence_id)
        return hashlib.sha256(document.content).hexdigest() == document.sha256

    def tamper(self, evidence_id: str, content: bytes) -> None:
        """Replace stored bytes without updating the hash (simulates a forged upload)."""
        with self._lock:
            original = self._documents[evidence_id]
            self._documents[evidence_id] = StoredDocument(
                evidence_id=evidence_id,
                content=content,
                metadata=original.metadata,
                sha256=original.sha256,
            )


@dataclass(frozen=True)
class SanctionsEntry:
    name: str
    list_name: str
    date_of_birth: Optional[date] = None


class InMemorySanctionsList(SanctionsListProvider):
    """
    Returns every entry scoring above `candidate_floor`. Classifying a
    candidate as exact or fuzzy is the screener's job.
    """

    def __init__(
        self,
        entries: Optional[List[SanctionsEntry]] = None,
        version: str = "local-0",
        candidate_floor: float = 0.7,
    ):
        self._entries = list(entries or [])
        self._version = version
        self.candidate_floor = candidate_floor

    @property
    def version(self) -> str:
        return self._version

    def refresh(self, entries: List[SanctionsEntry], version: str) -> None:
        self._entries = list(entries)
        self._version = version

    def match_name(self, name: str, date_of_birth: Optional[date] = None) -> List[CandidateMatch]:
        matches = []
        for entry in self._entries:
            score = name_similarity(name, entry.name)
            if score < self.candidate_floor:
                continue
            matches.append(CandidateMatch(
                name=entry.name,
                list_name=entry.list_name,
                date_of_birth=entry.date_of_birth,
                score=score,
            ))
        return sorted(matches, key=lambda m: m.score, reverse=True)
