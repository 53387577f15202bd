"""
Root test configuration and fixtures.

Provides database fixtures that can be used by all tests:
- db_engine / db_session: SQLite in-memory (or PostgreSQL via DATABASE_URL)
  with per-test rollback. Code under test may commit and open SAVEPOINTs;
  everything is discarded when the test ends.
- fake_workos: in-memory stand-in for the WorkOS API with failure switches
- make_identity / make_membership: data builders
- rsa_keypair / jwks_document / create_test_token: signed session tokens
- temp_config_dir / make_yaml_config: YAML config files
"""

import os
import tempfile
import time
import uuid
from pathlib import Path
from typing import Callable, Dict, Generator, List, Optional

import jwt
import pytest
import yaml
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from orgscope.integrations.workos.exceptions import (
    WorkOSConflictError,
    WorkOSNotFoundError,
    WorkOSServerError,
)
from orgscope.integrations.workos.models import (
    WorkOSAuthentication,
    WorkOSMembership,
    WorkOSOrganization,
    WorkOSUser,
)

# Set test environment
os.environ.setdefault("ENV", "test")

TEST_ISSUER = "https://api.workos.test"
TEST_KID = "key_test_1"


def _get_test_database_url() -> str:
    """Get database URL for tests."""
    database_url = os.getenv("DATABASE_URL")

    if database_url:
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)
        return database_url

    # Default to SQLite for unit tests if no PostgreSQL available
    return "sqlite:///:memory:"


def _is_postgres() -> bool:
    """Check if using PostgreSQL."""
    return _get_test_database_url().startswith("postgresql")


# =============================================================================
# Database
# =============================================================================


@pytest.fixture(scope="session")
def db_engine():
    """
    Create database engine for tests.

    Uses PostgreSQL if DATABASE_URL is set, otherwise SQLite in-memory.
    """
    database_url = _get_test_database_url()

    if _is_postgres():
        try:
            engine = create_engine(database_url, pool_pre_ping=True)
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            pytest.skip(
                f"PostgreSQL not available. Set DATABASE_URL or use SQLite. Error: {e}"
            )
    else:
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

        # pysqlite does not emit BEGIN itself, which breaks SAVEPOINT.
        # Let SQLAlchemy own the transaction boundaries.
        @event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _emit_begin(conn):
            conn.exec_driver_sql("BEGIN")

    from orgscope.db_base import Base
    import orgscope.models  # noqa: F401
    import orgscope.platform.audit  # noqa: F401

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_connection(db_engine):
    """Connection inside an outer transaction that is always rolled back."""
    connection = db_engine.connect()
    transaction = connection.begin()
    yield connection
    if transaction.is_active:
        transaction.rollback()
    connection.close()


@pytest.fixture(scope="function")
def db_session(db_connection) -> Generator[Session, None, None]:
    """
    Create database session with transaction rollback for test isolation.

    session.commit() releases a SAVEPOINT instead of committing, so code
    under test keeps its real commit/rollback behaviour.
    """
    session = Session(
        bind=db_connection,
        autoflush=False,
        join_transaction_mode="create_savepoint",
    )
    yield session
    session.close()


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Drop cached settings, clients and policy loader around every test."""
    from orgscope.auth.verifier import reset_verifier
    from orgscope.config.audit_policies import reset_audit_policies_loader
    from orgscope.config.settings import reset_settings
    from orgscope.integrations.workos.client import reset_workos_client

    reset_settings()
    reset_verifier()
    reset_workos_client()
    reset_audit_policies_loader()
    yield
    reset_settings()
    reset_verifier()
    reset_workos_client()
    reset_audit_policies_loader()


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "security: mark test as security-focused")
    config.addinivalue_line("markers", "slow: mark test as slow-running")
    config.addinivalue_line("markers", "postgres: requires PostgreSQL (DATABASE_URL)")


def pytest_collection_modifyitems(config, items):
    if _is_postgres():
        return
    skip_pg = pytest.mark.skip(reason="requires PostgreSQL (set DATABASE_URL)")
    for item in items:
        if "postgres" in item.keywords:
            item.add_marker(skip_pg)


# =============================================================================
# Identity provider fake
# =============================================================================


class FakeWorkOS:
    """
    In-memory WorkOS API.

    Email uniqueness is enforced like the real API. Failure switches:
    - fail_create_organization / fail_create_membership / fail_create_user
    - fail_magic_auth
    """

    def __init__(self):
        self.users: Dict[str, WorkOSUser] = {}
        self.organizations: Dict[str, WorkOSOrganization] = {}
        self.memberships: Dict[str, WorkOSMembership] = {}
        self.magic_auth_sent: List[str] = []
        self.deleted_organizations: List[str] = []
        self.calls: List[str] = []
        # code -> user id; access tokens come from token_factory when set
        self.codes: Dict[str, str] = {}
        self.token_factory: Optional[Callable[[str], str]] = None

        self.fail_create_user = False
        self.fail_create_organization = False
        self.fail_create_membership = False
        self.fail_magic_auth = False

    def add_user(self, email: str, first_name: Optional[str] = None, last_name: Optional[str] = None) -> WorkOSUser:
        user = WorkOSUser(
            id=f"user_{uuid.uuid4().hex[:12]}",
            email=email.lower(),
            first_name=first_name,
            last_name=last_name,
        )
        self.users[user.id] = user
        return user

    def create_user(self, email, first_name=None, last_name=None, email_verified=False) -> WorkOSUser:
        self.calls.append("create_user")
        if self.fail_create_user:
            raise WorkOSServerError(message="upstream failure", status_code=500)
        if any(u.email == email.lower() for u in self.users.values()):
            raise WorkOSConflictError(message="Email not available", status_code=422, code="email_not_available")
        return self.add_user(email, first_name, last_name)

    def get_user(self, user_id: str) -> WorkOSUser:
        self.calls.append("get_user")
        if user_id not in self.users:
            raise WorkOSNotFoundError(message=f"Resource not found: {user_id}")
        return self.users[user_id]

    def get_user_by_email(self, email: str) -> Optional[WorkOSUser]:
        self.calls.append("get_user_by_email")
        for user in self.users.values():
            if user.email == email.lower():
                return user
        return None

    def send_magic_auth_code(self, email: str) -> None:
        self.calls.append("send_magic_auth_code")
        if self.fail_magic_auth:
            raise WorkOSServerError(message="mail provider down", status_code=503)
        self.magic_auth_sent.append(email)

    def authenticate_with_code(self, code: str) -> WorkOSAuthentication:
        self.calls.append("authenticate_with_code")
        if code not in self.codes:
            raise WorkOSConflictError(message="invalid_grant", status_code=400, code="invalid_grant")
        user_id = self.codes[code]
        token = self.token_factory(user_id) if self.token_factory else f"token-for-{user_id}"
        return WorkOSAuthentication(user=self.users[user_id], access_token=token)

    def create_organization(self, name: str, external_id: Optional[str] = None) -> WorkOSOrganization:
        self.calls.append("create_organization")
        if self.fail_create_organization:
            raise WorkOSServerError(message="upstream failure", status_code=502)
        org = WorkOSOrganization(id=f"org_{uuid.uuid4().hex[:12]}", name=name, external_id=external_id)
        self.organizations[org.id] = org
        return org

    def delete_organization(self, organization_id: str) -> None:
        self.calls.append("delete_organization")
        self.organizations.pop(organization_id, None)
        self.deleted_organizations.append(organization_id)

    def create_organization_membership(self, user_id: str, organization_id: str, role_slug: str) -> WorkOSMembership:
        self.calls.append("create_organization_membership")
        if self.fail_create_membership:
            raise WorkOSServerError(message="upstream failure", status_code=500)
        membership = WorkOSMembership(
            id=f"om_{uuid.uuid4().hex[:12]}",
            user_id=user_id,
            organization_id=organization_id,
            status="active",
        )
        self.memberships[membership.id] = membership
        return membership

    def count(self, call: str) -> int:
        return self.calls.count(call)


@pytest.fixture
def fake_workos() -> FakeWorkOS:
    return FakeWorkOS()


# =============================================================================
# Data builders
# =============================================================================


@pytest.fixture
def make_identity(db_session):
    """
    Factory for committed Identity rows.

    Usage:
        identity = make_identity("alice@example.com", display_name="Alice")
    """
    from orgscope.models.identity import Identity

    def _make(email: Optional[str] = None, external_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("is_active", True)
        identity = Identity(
            email=(email or f"user-{uuid.uuid4().hex[:8]}@example.com").lower(),
            external_id=external_id or f"user_{uuid.uuid4().hex[:12]}",
            **kwargs,
        )
        db_session.add(identity)
        db_session.commit()
        return identity

    return _make


@pytest.fixture
def make_membership(db_session):
    """
    Factory for an Organization plus Membership for an existing identity.

    Usage:
        org, membership = make_membership(identity, role="admin")
    """
    from orgscope.models.membership import Membership, MembershipStatus
    from orgscope.models.organization import Organization, OrganizationType

    def _make(identity, role: str = "member", status: str = MembershipStatus.ACTIVE.value,
              name: Optional[str] = None, last_active_at=None):
        suffix = uuid.uuid4().hex[:8]
        organization = Organization(
            name=name or f"Clinic {suffix}",
            slug=f"clinic-{suffix}",
            type=OrganizationType.CLINIC.value,
            external_id=f"org_{suffix}",
            is_active=True,
        )
        db_session.add(organization)
        db_session.flush()
        membership = Membership(
            identity_id=identity.id,
            organization_id=organization.id,
            role=role,
            status=status,
            last_active_at=last_active_at,
        )
        db_session.add(membership)
        db_session.commit()
        return organization, membership

    return _make


# =============================================================================
# Tokens
# =============================================================================


@pytest.fixture(scope="session")
def rsa_keypair():
    """Generate RSA keypair for testing."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return {
        "private_key": private_key,
        "public_key": private_key.public_key(),
        "private_pem": private_pem,
    }


@pytest.fixture(scope="session")
def jwks_document(rsa_keypair) -> dict:
    """JWKS JSON exposing the test public key."""
    jwk = RSAAlgorithm.to_jwk(rsa_keypair["public_key"], as_dict=True)
    jwk.update({"kid": TEST_KID, "use": "sig", "alg": "RS256"})
    return {"keys": [jwk]}


@pytest.fixture
def test_issuer() -> str:
    return TEST_ISSUER


@pytest.fixture
def create_test_token(rsa_keypair):
    """Factory to create signed session tokens."""
    def _create(claims=None, expired=False, invalid_sig=False, kid=TEST_KID, issuer=TEST_ISSUER):
        now = int(time.time())
        default_claims = {
            "sub": "user_workos_test123",
            "iss": issuer,
            "exp": now - 3600 if expired else now + 3600,
            "iat": now - 7200 if expired else now,
            "sid": "session_test123",
        }
        token_claims = {**default_claims, **(claims or {})}

        key = rsa_keypair["private_pem"]
        if invalid_sig:
            # Generate a different key for invalid signature
            bad_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
            key = bad_key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.TraditionalOpenSSL,
                serialization.NoEncryption(),
            )

        return jwt.encode(token_claims, key, algorithm="RS256", headers={"kid": kid})

    return _create


@pytest.fixture
def make_verifier(jwks_document):
    """Build an IdentityTokenVerifier whose JWKS comes from a MockTransport."""
    import httpx

    from orgscope.auth.jwks import JWKSCache
    from orgscope.auth.verifier import IdentityTokenVerifier

    def _make(issuer: str = TEST_ISSUER, audience: Optional[str] = None):
        client = httpx.Client(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json=jwks_document)
        ))
        jwks = JWKSCache("https://api.workos.test/sso/jwks/client_test", http_client=client)
        return IdentityTokenVerifier(jwks=jwks, issuer=issuer, audience=audience)

    return _make


# =============================================================================
# Shared Config Fixtures
# =============================================================================


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("audit_policies.yml", {"events": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
