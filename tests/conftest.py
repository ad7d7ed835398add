"""
TenderHub Bids Test Configuration
=================================

Fixtures:
- In-memory SQLite engine (StaticPool) with all tables created
- Session per test
- Factory for organizations, users, tenders, sections, proposals and responses
- ``world``: an authority tender (S1 mandatory, S2 optional) with one DRAFT
  proposal, plus bidder, rival bidder and assister identities
"""

import os
import sys
from types import SimpleNamespace

# Must be set before database / redis modules are imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = ""

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from core.identity import CallerIdentity
from database import (
    OrganizationDB,
    ProposalDB,
    ProposalSectionResponseDB,
    TenderDB,
    TenderSectionDB,
    UploadedTenderDB,
    UserDB,
    create_tables,
)


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure pytest markers"""
    config.addinivalue_line("markers", "unit: Unit tests (fast, no database)")
    config.addinivalue_line("markers", "integration: Integration tests against an in-memory database")


# =============================================================================
# Database fixtures
# =============================================================================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


# =============================================================================
# Factories
# =============================================================================

class Factory:
    """Direct row builders; bypass the services so tests control initial state."""

    def __init__(self, db):
        self.db = db
        self._counter = 0

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    def organization(self, name=None):
        org = OrganizationDB(name=name or f"Org {self._next()}")
        self.db.add(org)
        self.db.commit()
        return org

    def user(self, organization=None, role="BIDDER", name=None):
        n = self._next()
        user = UserDB(
            email=f"user{n}@example.com",
            name=name or f"User {n}",
            role=role,
            organization_id=organization.id if organization else None,
        )
        self.db.add(user)
        self.db.commit()
        return user

    @staticmethod
    def identity(user) -> CallerIdentity:
        return CallerIdentity.from_user(user)

    def tender(self, organization, sections=(("Technical Approach", True), ("Annexures", False)), status="PUBLISHED"):
        tender = TenderDB(
            organization_id=organization.id,
            title=f"Tender {self._next()}",
            description="Supply and installation",
            status=status,
        )
        self.db.add(tender)
        self.db.flush()
        for index, (title, mandatory) in enumerate(sections, start=1):
            self.db.add(TenderSectionDB(
                tender_id=tender.id,
                title=title,
                order_index=index,
                is_mandatory=mandatory,
            ))
        self.db.commit()
        return tender

    def sections(self, tender):
        return (
            self.db.query(TenderSectionDB)
            .filter(TenderSectionDB.tender_id == tender.id)
            .order_by(TenderSectionDB.order_index)
            .all()
        )

    def proposal(self, tender, organization, status="DRAFT", bid_amount=None, created_by=None):
        proposal = ProposalDB(
            tender_id=tender.id,
            organization_id=organization.id,
            created_by=created_by,
            status=status,
            version=1,
            bid_amount=bid_amount,
        )
        proposal.root_proposal_id = proposal.id = f"proposal-{self._next()}"
        self.db.add(proposal)
        self.db.commit()
        return proposal

    def response(self, proposal, section, content):
        response = ProposalSectionResponseDB(
            proposal_id=proposal.id,
            section_id=section.id,
            content=content,
        )
        self.db.add(response)
        self.db.commit()
        return response

    def uploaded_tender(self, organization, sections=(("scope", "Scope of Work"), ("eligibility", "Eligibility"))):
        uploaded = UploadedTenderDB(
            organization_id=organization.id,
            title=f"Uploaded Tender {self._next()}",
            analysis_data={
                "normalizedSections": [{"key": key, "title": title} for key, title in sections],
            },
        )
        self.db.add(uploaded)
        self.db.commit()
        return uploaded


@pytest.fixture
def factory(db):
    return Factory(db)


@pytest.fixture
def world(factory):
    """Authority tender with S1 (mandatory) and S2 (optional) and one bidder DRAFT proposal."""
    authority_org = factory.organization("City Water Board")
    bidder_org = factory.organization("Acme Infra")
    rival_org = factory.organization("Beta Constructions")

    authority_user = factory.user(authority_org, role="AUTHORITY")
    bidder_user = factory.user(bidder_org, role="BIDDER")
    rival_user = factory.user(rival_org, role="BIDDER")
    assister_user = factory.user(None, role="ASSISTER")
    second_assister_user = factory.user(None, role="ASSISTER")

    tender = factory.tender(authority_org)
    s1, s2 = factory.sections(tender)
    proposal = factory.proposal(tender, bidder_org, created_by=bidder_user.id)

    return SimpleNamespace(
        authority_org=authority_org,
        bidder_org=bidder_org,
        rival_org=rival_org,
        authority=factory.identity(authority_user),
        bidder=factory.identity(bidder_user),
        rival=factory.identity(rival_user),
        assister=factory.identity(assister_user),
        second_assister=factory.identity(second_assister_user),
        tender=tender,
        s1=s1,
        s2=s2,
        proposal=proposal,
    )
