from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from shipwright.governance.policy import (
    PolicyLoadError,
    default_policy,
    load_governance_policy,
    parse_governance_policy,
)

if TYPE_CHECKING:
    from pathlib import Path


def _payload(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "schema_version": 1,
        "policy_version": "t1",
        "transient_error_patterns": ["Timeout"],
        "critical_paths": {
            "payments": {
                "description": "Payments",
                "path_patterns": ["**/billing/**"],
                "keywords": ["Stripe"],
            }
        },
    }
    payload.update(overrides)
    return payload


@pytest.mark.unit
def test_default_policy_loads_and_is_cached() -> None:
    policy = default_policy()
    assert policy is default_policy()
    assert load_governance_policy() is policy
    assert policy.schema_version == 1
    ids = {category.category_id for category in policy.critical_paths}
    assert {
        "authentication",
        "payments",
        "user_data_deletion",
        "schema_migration",
        "security",
        "production_deployment",
    } <= ids
    assert "timeout" in policy.transient_error_patterns


@pytest.mark.unit
@pytest.mark.parametrize(
    ("areas", "expected"),
    [
        (["src/auth/session.ts"], ("authentication",)),
        (["app/api/checkout/route.ts"], ("payments",)),
        (["prisma/migrations/001_init.sql"], ("schema_migration",)),
        (["/.env.local"], ("security",)),
        ([".github/workflows/deploy.yml"], ("production_deployment",)),
        (["src/components/Header.tsx", "src/styles/theme.css"], ()),
        (["Billing", "src\\Auth\\guard.ts"], ("authentication", "payments")),
    ],
)
def test_critical_categories_for(areas: list[str], expected: tuple[str, ...]) -> None:
    assert default_policy().critical_categories_for(areas) == expected


@pytest.mark.unit
def test_parse_normalizes_patterns_and_keywords() -> None:
    policy = parse_governance_policy(_payload())
    category = policy.category("payments")

    assert policy.transient_error_patterns == ("timeout",)
    assert category.keywords == frozenset({"stripe"})
    assert category.matches("lib/stripe-client.ts")
    assert category.matches("apps/web/billing/plan.tsx")
    assert not category.matches("")
    with pytest.raises(KeyError):
        policy.category("missing")


@pytest.mark.unit
@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"schema_version": 2}, "schema_version"),
        ({"policy_version": " "}, "policy_version"),
        ({"transient_error_patterns": []}, "must not be empty"),
        ({"critical_paths": {}}, "must not be empty"),
        ({"critical_paths": {"Bad-Id": {"description": "x", "keywords": ["a"]}}}, "snake_case"),
        ({"critical_paths": {"empty": {"description": "x"}}}, "at least one"),
        ({"extra": True}, "unexpected fields"),
    ],
)
def test_parse_rejects_invalid_tables(overrides: dict[str, object], message: str) -> None:
    with pytest.raises(PolicyLoadError, match=message):
        parse_governance_policy(_payload(**overrides))


@pytest.mark.unit
def test_load_from_file_and_report_yaml_errors(tmp_path: Path) -> None:
    good = tmp_path / "policy.yaml"
    good.write_text(
        "schema_version: 1\n"
        "policy_version: custom\n"
        "transient_error_patterns: [busy]\n"
        "critical_paths:\n"
        "  security:\n"
        "    description: Security\n"
        "    keywords: [vault]\n",
        encoding="utf-8",
    )
    policy = load_governance_policy(good)
    assert policy.policy_version == "custom"
    assert policy.critical_categories_for(["infra/vault/config.hcl"]) == ("security",)

    bad = tmp_path / "bad.yaml"
    bad.write_text("schema_version: [1\n", encoding="utf-8")
    with pytest.raises(PolicyLoadError, match="invalid YAML"):
        load_governance_policy(bad)
    with pytest.raises(PolicyLoadError, match="unable to read"):
        load_governance_policy(tmp_path / "missing.yaml")


@pytest.mark.unit
def test_to_dict_is_stable() -> None:
    payload = parse_governance_policy(_payload()).to_dict()
    assert payload["critical_paths"] == {
        "payments": {
            "description": "Payments",
            "path_patterns": ["**/billing/**"],
            "keywords": ["stripe"],
        }
    }
