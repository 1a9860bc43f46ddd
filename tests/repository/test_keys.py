"""Tests for cache key derivation."""

import pytest

from arepo.repository import (
    CriteriaParams,
    CriteriaPipeline,
    Operator,
    OrderBy,
    RequestCriterion,
    Where,
    derive_key,
    parse,
)
from arepo.repository.keys import content_hash


def identities(*criteria: object) -> tuple:
    return CriteriaPipeline().pushed(*criteria).identities()  # type: ignore[arg-type]


class TestDeriveKey:
    @pytest.mark.unit
    def test_key_layout(self) -> None:
        key = derive_key("user", "all", (), ())
        prefix, entity, operation, args_hash, criteria_hash = key.split(":")

        assert (prefix, entity, operation) == ("repo", "user", "all")
        assert len(args_hash) == len(criteria_hash) == 32

    @pytest.mark.unit
    def test_deterministic(self) -> None:
        criteria = identities(
            Where("status", Operator.EQ, ["active"]),
            RequestCriterion(parse({"filter": "role_id:in:3,7", "orderBy": "name"})),
        )
        keys = {derive_key("user", "paginate", (15, 1), criteria) for _ in range(100)}
        assert len(keys) == 1

    @pytest.mark.unit
    def test_equal_criteria_give_equal_keys(self) -> None:
        left = identities(Where("status", Operator.EQ, ["active"]))
        right = identities(Where("status", Operator.EQ, ("active",)))
        assert derive_key("user", "all", (), left) == derive_key("user", "all", (), right)

    @pytest.mark.unit
    def test_criteria_order_matters(self) -> None:
        where, order = Where("status", Operator.EQ, ["active"]), OrderBy("name")
        assert derive_key("user", "all", (), identities(where, order)) != derive_key(
            "user",
            "all",
            (),
            identities(order, where),
        )

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "changed",
        [
            {"entity_type": "post"},
            {"operation": "first"},
            {"args": (2,)},
            {"criteria": identities(Where("status", Operator.EQ, ["banned"]))},
            {"prefix": "other"},
        ],
    )
    def test_any_argument_changes_the_key(self, changed: dict[str, object]) -> None:
        base: dict[str, object] = {
            "entity_type": "user",
            "operation": "all",
            "args": (1,),
            "criteria": identities(Where("status", Operator.EQ, ["active"])),
            "prefix": "repo",
        }
        assert derive_key(**base) != derive_key(**(base | changed))  # type: ignore[arg-type]

    @pytest.mark.unit
    def test_argument_types_are_distinguished(self) -> None:
        assert derive_key("user", "find", (1,), ()) != derive_key("user", "find", ("1",), ())

    @pytest.mark.unit
    def test_no_collisions_over_many_inputs(self) -> None:
        keys = set()
        for n in range(10_000):
            criteria = identities(Where("role_id", Operator.EQ, [n % 97]), OrderBy(f"f{n}"))
            keys.add(derive_key("user", "paginate", (n // 97, n), criteria))
        assert len(keys) == 10_000

    @pytest.mark.unit
    def test_mapping_order_does_not_matter(self) -> None:
        assert content_hash({"a": 1, "b": 2}) == content_hash({"b": 2, "a": 1})

    @pytest.mark.unit
    def test_pydantic_models_are_hashable(self) -> None:
        assert content_hash([CriteriaParams()]) == content_hash([CriteriaParams()])
        assert content_hash([CriteriaParams()]) != content_hash([CriteriaParams(filter="f")])
