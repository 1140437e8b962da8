from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from sqlalchemy import String, Uuid, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit
from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError, OrganizationScopeError
from app.platform.security.rls import (
    apply_rls_filter,
    effective_organization_scope,
    validate_rls_read_scope,
    validate_rls_write,
)

ORG_A = uuid.UUID("00000000-0000-0000-0000-00000000000a")
ORG_B = uuid.UUID("00000000-0000-0000-0000-00000000000b")


class Base(DeclarativeBase):
    pass


class DemoScopedModel(Base):
    __tablename__ = "demo_scoped_model"

    id: Mapped[int] = mapped_column(primary_key=True)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    name: Mapped[str] = mapped_column(String(32))


@pytest.fixture(autouse=True)
def clear_decisions() -> Generator[None, None, None]:
    audit.security_decisions.clear()
    yield
    audit.security_decisions.clear()


@pytest.fixture()
def session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine)()
    session.add_all(
        [
            DemoScopedModel(id=1, organization_id=ORG_A, name="alpha"),
            DemoScopedModel(id=2, organization_id=ORG_B, name="beta"),
        ]
    )
    session.commit()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def test_effective_scope_prefers_explicit_list() -> None:
    assert effective_organization_scope(AuthContext(user_id="u1", organization_id="a")) == ["a"]
    assert effective_organization_scope(AuthContext(user_id="u1", organization_id="a", organization_scope=["a", "b", ""])) == [
        "a",
        "b",
    ]
    assert effective_organization_scope(AuthContext(user_id="u1")) == []


def test_apply_rls_filter_restricts_rows_to_scope(session: Session) -> None:
    ctx = AuthContext(user_id="u1", organization_id=str(ORG_A))

    stmt = apply_rls_filter(select(DemoScopedModel), "demo.resource", ctx)

    assert "organization_id" in str(stmt)
    assert [row.name for row in session.scalars(stmt)] == ["alpha"]


def test_apply_rls_filter_admin_bypass(session: Session) -> None:
    ctx = AuthContext(user_id="root", organization_id=str(ORG_A), roles=["admin"])

    stmt = apply_rls_filter(select(DemoScopedModel).order_by(DemoScopedModel.id), "demo.resource", ctx)

    assert [row.name for row in session.scalars(stmt)] == ["alpha", "beta"]


def test_validate_rls_write_blocks_out_of_scope_values() -> None:
    ctx = AuthContext(user_id="u2", organization_id=str(ORG_A))

    with pytest.raises(AuthorizationError):
        validate_rls_write("crm.contact", {"organization_id": str(ORG_B)}, ctx)

    with pytest.raises(OrganizationScopeError):
        validate_rls_write("crm.contact", {"firstname": "Ada"}, ctx, existing_scope={"organization_id": str(ORG_B)})

    validate_rls_write("crm.contact", {"organization_id": ORG_A}, ctx)
    [first, second] = audit.denials_of("rls")
    assert first["details"] == {"scope_type": "organization", "scope_value": str(ORG_B)}
    assert second["operation"] == "write"


def test_validate_rls_write_admin_bypass() -> None:
    ctx = AuthContext(user_id="admin", organization_id=str(ORG_A), is_super_admin=True)

    validate_rls_write("crm.contact", {"organization_id": str(ORG_B)}, ctx)

    assert audit.security_decisions == []


def test_validate_rls_read_scope_records_denial() -> None:
    ctx = AuthContext(user_id="u3", organization_id=str(ORG_A), correlation_id="corr-rls-1")

    validate_rls_read_scope("crm.opportunity", ctx, organization_id=str(ORG_A))
    with pytest.raises(OrganizationScopeError) as exc_info:
        validate_rls_read_scope("crm.opportunity", ctx, organization_id=str(ORG_B), action="read")

    assert exc_info.value.resource == "crm.opportunity"
    [denial] = audit.denials_of("rls")
    assert denial["resource"] == "crm.opportunity"
    assert denial["user_id"] == "u3"
    assert denial["correlation_id"] == "corr-rls-1"
