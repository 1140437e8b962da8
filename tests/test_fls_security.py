from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest

from app import audit
from app.crm.repositories import ContactRepository
from app.integrations.webhooks.repository import WebhookRepository
from app.platform.security.context import AuthContext
from app.platform.security.errors import ForbiddenFieldError
from app.platform.security.fls import MASKED_FIELD_VALUE, apply_fls_read, validate_fls_write
from app.platform.security.policies import DEFAULT_ROLE_GRANTS, InMemoryPolicyBackend, set_policy_backend


@pytest.fixture(autouse=True)
def reset_policy_backend() -> Generator[None, None, None]:
    set_policy_backend(InMemoryPolicyBackend(default_allow=True))
    audit.security_decisions.clear()
    yield
    set_policy_backend(InMemoryPolicyBackend(default_allow=True))
    audit.security_decisions.clear()


def test_apply_fls_read_allow_mask_deny() -> None:
    set_policy_backend(InMemoryPolicyBackend(default_allow=False))
    ctx = AuthContext(
        user_id="user-1",
        organization_id="org-1",
        permissions=[
            "crm.contact.field.read:firstname",
            "crm.contact.field.mask:email",
        ],
    )

    output = apply_fls_read(
        "crm.contact",
        {"firstname": "Ada", "email": "ada@example.com", "personality_type": "analytical"},
        ctx,
    )

    assert output == {"firstname": "Ada", "email": MASKED_FIELD_VALUE}
    [denial] = audit.denials_of("fls")
    assert denial["operation"] == "read"
    assert denial["details"]["masked_fields"] == ["email"]
    assert denial["details"]["denied_fields"] == ["personality_type"]


def test_validate_fls_write_denies_forbidden_fields() -> None:
    set_policy_backend(InMemoryPolicyBackend(default_allow=False))
    ctx = AuthContext(user_id="user-2", organization_id="org-1", permissions=["crm.contact.field.edit:firstname"])

    with pytest.raises(ForbiddenFieldError) as exc_info:
        validate_fls_write("crm.contact", {"firstname": "Grace", "position": "CTO"}, ctx)

    assert exc_info.value.fields == ["position"]
    assert audit.denials_of("fls")[0]["operation"] == "write"


def test_role_grants_and_wildcards() -> None:
    set_policy_backend(
        InMemoryPolicyBackend(
            {"sales": {"crm.contact.field.read:*", "crm.contact.field.edit:*"}},
            default_allow=False,
        )
    )
    ctx = AuthContext(user_id="user-3", organization_id="org-1", roles=["sales"])

    assert apply_fls_read("crm.contact", {"firstname": "Linus", "phone": "+1 555"}, ctx) == {
        "firstname": "Linus",
        "phone": "+1 555",
    }
    validate_fls_write("crm.contact", {"notes": "Met at expo"}, ctx)
    assert audit.security_decisions == []


def test_contact_repository_end_to_end_enforcement() -> None:
    set_policy_backend(InMemoryPolicyBackend(default_allow=False))
    repo = ContactRepository()
    ctx = AuthContext(
        user_id="user-4",
        organization_id="org-1",
        permissions=[
            "crm.contact.field.read:*",
            "crm.contact.field.mask:email",
            "crm.contact.field.edit:firstname",
        ],
    )

    raw_record = {
        "id": str(uuid.uuid4()),
        "firstname": "Linus",
        "email": "linus@example.com",
        "company": "Initech",
    }
    secured = repo.apply_read_security(raw_record, ctx)
    assert secured["firstname"] == "Linus"
    assert secured["email"] == MASKED_FIELD_VALUE
    assert secured["company"] == "Initech"

    # Server-managed columns are not subject to field edit grants.
    repo.validate_write_security({"firstname": "Linus", "organization_id": "org-1", "created_by": "user-4"}, ctx)

    with pytest.raises(ForbiddenFieldError) as exc_info:
        repo.validate_write_security({"company": "Globex"}, ctx)
    assert exc_info.value.fields == ["company"]


def test_webhook_secret_can_be_masked() -> None:
    set_policy_backend(InMemoryPolicyBackend(default_allow=False))
    ctx = AuthContext(
        user_id="viewer",
        organization_id="org-1",
        permissions=["integrations.webhook.field.read:*", "integrations.webhook.field.mask:secret"],
    )

    secured = WebhookRepository().apply_read_security({"name": "Zapier", "secret": "whsec-123"}, ctx)

    assert secured == {"name": "Zapier", "secret": MASKED_FIELD_VALUE}


def test_default_role_grants() -> None:
    set_policy_backend(InMemoryPolicyBackend(DEFAULT_ROLE_GRANTS, default_allow=False))
    record = {"firstname": "Ada", "email": "ada@example.com", "phone": "+44 20"}

    owner = AuthContext(user_id="owner", organization_id="org-1", roles=["Owner"])
    viewer = AuthContext(user_id="viewer", organization_id="org-1", roles=["viewer"])
    member = AuthContext(user_id="member", organization_id="org-1", roles=["member"])

    assert apply_fls_read("crm.contact", record, owner) == record
    assert apply_fls_read("crm.contact", record, viewer) == {
        "firstname": "Ada",
        "email": MASKED_FIELD_VALUE,
        "phone": MASKED_FIELD_VALUE,
    }
    assert apply_fls_read("integrations.webhook", {"url": "https://x", "secret": "s"}, member) == {
        "url": "https://x",
        "secret": MASKED_FIELD_VALUE,
    }

    validate_fls_write("crm.opportunity", {"title": "Renewal"}, member)
    with pytest.raises(ForbiddenFieldError):
        validate_fls_write("crm.contact", {"firstname": "Eve"}, viewer)
    with pytest.raises(ForbiddenFieldError):
        validate_fls_write("platform.organization_setting", {"setting_value": {}}, member)
