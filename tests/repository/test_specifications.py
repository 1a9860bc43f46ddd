"""Tests for query specifications."""

from datetime import date, datetime

import pytest

from arepo.repository import (
    AndSpecification,
    NotSpecification,
    Operator,
    OrSpecification,
)
from arepo.repository.specifications import (
    ColumnSpecification,
    FieldSpecification,
    NeverSpecification,
    SpecificationContext,
    between,
    combine,
    equals,
    in_values,
    like,
    like_pattern,
    not_in_values,
    read_field,
)


class TestSpecificationSQL:
    @pytest.mark.unit
    def test_field_specification_binds_parameters(self) -> None:
        clause, params = equals("status", "active").to_sql_where(SpecificationContext())
        assert clause == "status = :p0"
        assert params == {"p0": "active"}

    @pytest.mark.unit
    def test_field_mappings_and_alias(self) -> None:
        context = SpecificationContext(field_mappings={"name": "full_name"}, table_alias="u")
        clause, _ = like("name", "%ada%").to_sql_where(context)
        assert clause == "u.full_name LIKE :p0"

    @pytest.mark.unit
    def test_in_and_between(self) -> None:
        context = SpecificationContext()
        in_clause, in_params = in_values("role_id", [3, 7]).to_sql_where(context)
        range_clause, range_params = between("age", 18, 65).to_sql_where(context)

        assert in_clause == "role_id IN (:p0,:p1)"
        assert in_params == {"p0": 3, "p1": 7}
        assert range_clause == "age BETWEEN :p2 AND :p3"
        assert range_params == {"p2": 18, "p3": 65}

    @pytest.mark.unit
    def test_empty_in_lists(self) -> None:
        context = SpecificationContext()
        assert in_values("id", []).to_sql_where(context) == ("1 = 0", {})
        assert not_in_values("id", []).to_sql_where(context) == ("1 = 1", {})

    @pytest.mark.unit
    def test_null_and_date_operators(self) -> None:
        context = SpecificationContext()
        assert FieldSpecification("email", Operator.IS_NULL).to_sql_where(context) == (
            "email IS NULL",
            {},
        )
        clause, params = FieldSpecification(
            "created_at",
            Operator.DATE_EQUALS,
            ("2024-05-01",),
        ).to_sql_where(context)
        assert clause == "DATE(created_at) = :p0"
        assert params == {"p0": "2024-05-01"}

    @pytest.mark.unit
    def test_composite_specifications(self) -> None:
        spec = (equals("status", "active") | equals("status", "invited")) & ~equals("id", 1)
        clause, params = spec.to_sql_where(SpecificationContext())

        assert clause == "((status = :p0) OR (status = :p1)) AND (NOT (id = :p2))"
        assert params == {"p0": "active", "p1": "invited", "p2": 1}

    @pytest.mark.unit
    def test_empty_groups(self) -> None:
        context = SpecificationContext()
        assert AndSpecification([]).to_sql_where(context) == ("1 = 1", {})
        assert OrSpecification([]).to_sql_where(context) == ("1 = 0", {})
        assert NeverSpecification().to_sql_where(context) == ("1 = 0", {})

    @pytest.mark.unit
    def test_column_comparison(self) -> None:
        spec = ColumnSpecification("updated_at", Operator.GT, "created_at")
        assert spec.to_sql_where(SpecificationContext()) == ("updated_at > created_at", {})

    @pytest.mark.unit
    def test_column_comparison_rejects_like(self) -> None:
        with pytest.raises(ValueError, match="Unsupported column comparison"):
            ColumnSpecification("a", Operator.LIKE, "b")


class TestSpecificationEvaluation:
    @pytest.mark.unit
    def test_request_strings_are_coerced_to_stored_types(self) -> None:
        record = {"age": 36, "active": True, "score": 1.5}

        assert FieldSpecification("age", Operator.GTE, ("30",)).is_satisfied_by(record)
        assert FieldSpecification("active", Operator.EQ, ("true",)).is_satisfied_by(record)
        assert FieldSpecification("score", Operator.LT, ("2",)).is_satisfied_by(record)
        assert FieldSpecification("age", Operator.IN, ("3", "36")).is_satisfied_by(record)

    @pytest.mark.unit
    def test_null_values_never_compare(self) -> None:
        record = {"email": None}

        assert FieldSpecification("email", Operator.IS_NULL).is_satisfied_by(record)
        assert not FieldSpecification("email", Operator.EQ, ("x",)).is_satisfied_by(record)
        assert not FieldSpecification("email", Operator.NEQ, ("x",)).is_satisfied_by(record)

    @pytest.mark.unit
    def test_like_wildcards_are_case_insensitive(self) -> None:
        assert like_pattern("%lov_lace").match("Ada Lovelace")
        assert not like_pattern("ada").match("Ada Lovelace")
        assert like("name", "ada%").is_satisfied_by({"name": "Ada Lovelace"})

    @pytest.mark.unit
    def test_date_operators(self) -> None:
        record = {"created_at": datetime(2024, 5, 1, 13, 30)}

        assert FieldSpecification(
            "created_at",
            Operator.DATE_EQUALS,
            ("2024-05-01",),
        ).is_satisfied_by(record)
        assert FieldSpecification(
            "created_at",
            Operator.DATE_BETWEEN,
            ("2024-04-01", "2024-05-31"),
        ).is_satisfied_by(record)
        assert not FieldSpecification(
            "created_at",
            Operator.DATE_EQUALS,
            (date(2024, 5, 2),),
        ).is_satisfied_by(record)

    @pytest.mark.unit
    def test_dotted_fields(self) -> None:
        record = {"profile": {"city": "London"}}
        assert read_field(record, "profile.city") == "London"
        assert read_field(record, "profile.zip") is None
        assert equals("profile.city", "London").is_satisfied_by(record)

    @pytest.mark.unit
    def test_mismatched_types_do_not_raise(self) -> None:
        assert not FieldSpecification("age", Operator.GT, ("old",)).is_satisfied_by({"age": 3})

    @pytest.mark.unit
    def test_never_and_not(self) -> None:
        assert not NeverSpecification().is_satisfied_by({})
        assert NotSpecification(NeverSpecification()).is_satisfied_by({})


class TestSpecificationIdentity:
    @pytest.mark.unit
    def test_structural_equality(self) -> None:
        assert equals("status", "active") == equals("status", "active")
        assert equals("status", "active") != equals("status", "banned")
        assert len({equals("a", 1), equals("a", 1)}) == 1

    @pytest.mark.unit
    def test_combine_collapses_single_specification(self) -> None:
        spec = equals("a", 1)
        assert combine([spec]) is spec
        assert isinstance(combine([spec, spec], or_=True), OrSpecification)

    @pytest.mark.unit
    def test_to_dict(self) -> None:
        assert (~equals("a", 1)).to_dict() == {
            "type": "not",
            "specification": {
                "type": "field",
                "field": "a",
                "operator": "eq",
                "values": [1],
            },
        }
