"""
Tests for the transform stages.
"""

from datetime import datetime
from typing import Any

import pytest
from openpyxl.utils.datetime import to_excel

from sheetpipe.exceptions.pipeline_exceptions import (
    ColumnNotFoundError,
    DuplicateSheetError,
    MergeConflictError,
    RemapCollisionError,
    SheetNotFoundError,
    UnsupportedValueError,
    ValidationError,
)
from sheetpipe.models.cell_models import Cell
from sheetpipe.services.pipeline import validate_stages
from sheetpipe.services.stages import (
    build_stage,
    column_index,
    has_header,
    header_names,
    resolve_column,
)

SALES = {
    "Sales": [
        ["region", "amt"],
        ["East", 10],
        ["West", 20],
        ["east", 30],
        ["North", None],
    ]
}


def stage(descriptor: dict[str, Any]):
    """Build a stage from a raw descriptor."""
    return build_stage(validate_stages([descriptor])[0])


class TestColumnResolution:
    """Tests for header, index and letter column references."""

    def test_header_names_use_last_header_row(self, make_workbook):
        workbook = make_workbook({"S": [["Group", None], ["name", "amt"], ["a", 1]]})
        sheet = workbook.get_sheet("S")
        assert header_names(sheet, 2) == {"name": 0, "amt": 1}
        assert header_names(sheet, 0) == {}

    def test_resolution_order(self):
        headers = {"amt": 1, "B": 5}
        assert resolve_column("amt", headers, "S") == 1
        assert resolve_column("B", headers, "S") == 5
        assert resolve_column("$C", headers, "S") == 2
        assert resolve_column("3", headers, "S") == 3
        assert resolve_column(0, headers, "S") == 0

    def test_bare_letters_need_headerless_sheet(self):
        """Test that a short missing header name is not read as column letters."""
        with pytest.raises(ColumnNotFoundError):
            resolve_column("id", {"amount": 1}, "S")
        assert resolve_column("id", {}, "S", header_rows=0) == column_index("ID")
        assert resolve_column("$id", {"amount": 1}, "S") == 237

    def test_unknown_reference(self):
        with pytest.raises(ColumnNotFoundError) as exc_info:
            resolve_column("price", {"amt": 1}, "Sales")
        assert exc_info.value.details == {"sheet": "Sales", "column_ref": "price"}

    def test_column_index_limits(self):
        assert column_index("XFD") == 16383
        assert column_index("$XFD") == 16383
        assert column_index("XFE") is None
        assert column_index("C", letters=False) is None
        assert column_index("$C", letters=False) == 2
        assert column_index(16384) is None
        assert column_index(True) is None

    def test_has_header(self, make_workbook):
        workbook = make_workbook({"Sales": SALES["Sales"], "Blank": [], "Gap": [[], ["a", 1]]})
        assert has_header(workbook.get_sheet("Sales"), 1)
        assert not has_header(workbook.get_sheet("Blank"), 1)
        assert not has_header(workbook.get_sheet("Blank"), 0)
        assert not has_header(workbook.get_sheet("Gap"), 1)
        assert has_header(workbook.get_sheet("Gap"), 0)


class TestFilterRows:
    """Tests for the filterRows stage."""

    def test_keeps_header_and_matching_rows(self, make_workbook, values):
        """Test the basic equality filter."""
        workbook = make_workbook(SALES)
        result = stage({"op": "filterRows", "predicate": {"column": "region", "eq": "East"}}).apply(
            workbook
        )
        assert values(result.get_sheet("Sales")) == [["region", "amt"], ["East", 10]]

    def test_input_not_modified(self, make_workbook):
        workbook = make_workbook(SALES)
        before = workbook.snapshot()
        stage({"op": "filterRows", "predicate": {"column": "region", "eq": "East"}}).apply(workbook)
        assert workbook.snapshot() == before

    def test_kept_rows_are_packed(self, make_workbook):
        """Test that kept rows move up directly under the header."""
        workbook = make_workbook(SALES)
        result = stage({"op": "filterRows", "predicate": {"column": "amt", "gt": 15}}).apply(workbook)
        sales = result.get_sheet("Sales")
        assert sales.row_indices() == [0, 1, 2]
        assert sales.get(1, 0).value == "West"
        assert sales.get(2, 0).value == "east"

    def test_idempotent(self, make_workbook):
        workbook = make_workbook(SALES)
        filter_stage = stage({"op": "filterRows", "predicate": {"column": "amt", "ge": 20}})
        once = filter_stage.apply(workbook)
        twice = filter_stage.apply(once)
        assert once.value_equals(twice)

    def test_case_insensitive(self, make_workbook, values):
        workbook = make_workbook(SALES)
        result = stage(
            {
                "op": "filterRows",
                "predicate": {"column": "region", "eq": "EAST", "caseSensitive": False},
            }
        ).apply(workbook)
        assert [row[0] for row in values(result.get_sheet("Sales"))] == ["region", "East", "east"]

    def test_comparisons_are_type_strict(self, make_workbook, values):
        """Test that text "10" does not equal the number 10."""
        workbook = make_workbook(SALES)
        result = stage({"op": "filterRows", "predicate": {"column": "amt", "eq": "10"}}).apply(
            workbook
        )
        assert values(result.get_sheet("Sales")) == [["region", "amt"]]

        result = stage({"op": "filterRows", "predicate": {"column": "region", "gt": 5}}).apply(
            workbook
        )
        assert values(result.get_sheet("Sales")) == [["region", "amt"]]

    def test_empty_comparators(self, make_workbook, values):
        workbook = make_workbook(SALES)
        empty = stage(
            {"op": "filterRows", "predicate": {"column": "amt", "comparator": "empty"}}
        ).apply(workbook)
        assert values(empty.get_sheet("Sales"))[1:] == [["North"]]

        not_empty = stage(
            {"op": "filterRows", "predicate": {"column": "amt", "comparator": "notEmpty"}}
        ).apply(workbook)
        assert len(not_empty.get_sheet("Sales").row_indices()) == 4

    def test_missing_value_only_matches_ne(self, make_workbook, values):
        workbook = make_workbook(SALES)
        result = stage({"op": "filterRows", "predicate": {"column": "amt", "ne": 10}}).apply(
            workbook
        )
        assert [row[0] for row in values(result.get_sheet("Sales"))[1:]] == ["West", "east", "North"]

    def test_in_and_contains(self, make_workbook, values):
        workbook = make_workbook(SALES)
        result = stage(
            {"op": "filterRows", "predicate": {"column": "amt", "in": [10, 30]}}
        ).apply(workbook)
        assert [row[1] for row in values(result.get_sheet("Sales"))[1:]] == [10, 30]

        result = stage(
            {"op": "filterRows", "predicate": {"column": "region", "contains": "st"}}
        ).apply(workbook)
        assert [row[0] for row in values(result.get_sheet("Sales"))[1:]] == ["East", "West", "east"]

    def test_match_any_and_invert(self, make_workbook, values):
        workbook = make_workbook(SALES)
        descriptor = {
            "op": "filterRows",
            "predicates": [
                {"column": "region", "eq": "West"},
                {"column": "amt", "eq": 10},
            ],
            "match": "any",
        }
        result = stage(descriptor).apply(workbook)
        assert [row[0] for row in values(result.get_sheet("Sales"))[1:]] == ["East", "West"]

        result = stage({**descriptor, "invert": True}).apply(workbook)
        assert [row[0] for row in values(result.get_sheet("Sales"))[1:]] == ["east", "North"]

    def test_column_by_letter_and_index(self, make_workbook, values):
        workbook = make_workbook(SALES)
        by_letter = stage({"op": "filterRows", "predicate": {"column": "$B", "eq": 20}}).apply(workbook)
        by_index = stage({"op": "filterRows", "predicate": {"column": 1, "eq": 20}}).apply(workbook)
        assert by_letter.value_equals(by_index)
        assert values(by_letter.get_sheet("Sales"))[1] == ["West", 20]

    def test_without_header_rows(self, make_workbook, values):
        workbook = make_workbook({"Raw": [["a", 1], ["b", 2]]})
        result = stage(
            {"op": "filterRows", "predicate": {"column": "A", "eq": "b"}, "headerRows": 0}
        ).apply(workbook)
        assert values(result.get_sheet("Raw")) == [["b", 2]]

    def test_sheet_restriction(self, make_workbook):
        workbook = make_workbook({**SALES, "Other": [["region"], ["West"]]})
        result = stage(
            {"op": "filterRows", "predicate": {"column": "region", "eq": "East"}, "sheets": ["Sales"]}
        ).apply(workbook)
        assert result.get_sheet("Other").row_count == 2

    def test_unknown_sheet(self, make_workbook):
        with pytest.raises(SheetNotFoundError):
            stage(
                {"op": "filterRows", "predicate": {"column": "region", "eq": "x"}, "sheets": ["Nope"]}
            ).apply(make_workbook(SALES))

    def test_unknown_column(self, make_workbook):
        with pytest.raises(ColumnNotFoundError):
            stage({"op": "filterRows", "predicate": {"column": "price", "eq": 1}}).apply(
                make_workbook(SALES)
            )

    def test_short_missing_header_is_not_a_column_letter(self, make_workbook):
        """Test that "amt" on a sheet headed "amount" fails instead of reading column AMT."""
        workbook = make_workbook({"Sales": [["region", "amount"], ["East", 10], ["West", 20]]})
        with pytest.raises(ColumnNotFoundError) as exc_info:
            stage({"op": "filterRows", "predicate": {"column": "amt", "gt": 5}}).apply(workbook)
        assert exc_info.value.details == {"sheet": "Sales", "column_ref": "amt"}

    def test_default_scope_skips_sheets_without_header(self, make_workbook, values):
        """Test that blank sheets pass through when no sheets are named."""
        workbook = make_workbook({**SALES, "Blank": [], "Notes": [[], ["see", "below"]]})
        result = stage({"op": "filterRows", "predicate": {"column": "region", "eq": "East"}}).apply(
            workbook
        )
        assert values(result.get_sheet("Sales")) == [["region", "amt"], ["East", 10]]
        assert result.get_sheet("Blank").is_empty
        assert values(result.get_sheet("Notes")) == [["see", "below"]]

    def test_named_sheet_without_header_still_fails(self, make_workbook):
        workbook = make_workbook({**SALES, "Blank": []})
        with pytest.raises(ColumnNotFoundError) as exc_info:
            stage(
                {
                    "op": "filterRows",
                    "predicate": {"column": "region", "eq": "East"},
                    "sheets": ["Sales", "Blank"],
                }
            ).apply(workbook)
        assert exc_info.value.sheet == "Blank"

    def test_keeps_metadata(self, make_workbook):
        workbook = make_workbook(SALES)
        sheet = workbook.get_sheet("Sales")
        sheet.column_widths[0] = 18.0
        sheet.freeze_panes = "A2"
        result = stage({"op": "filterRows", "predicate": {"column": "region", "eq": "x"}}).apply(
            workbook
        )
        assert result.get_sheet("Sales").column_widths == {0: 18.0}
        assert result.get_sheet("Sales").freeze_panes == "A2"


KEYED = {
    "A": [["id", "value"], [1, "x"], [2, "y"]],
    "B": [["id", "value"], [2, "z"], [3, "w"]],
}


def merge(policy: str, **options: Any):
    return stage({"op": "mergeSheets", "conflictPolicy": policy, **options})


class TestMergeSheets:
    """Tests for the mergeSheets stage."""

    def test_keyed_keep_first(self, make_workbook, values):
        result = merge("keepFirst", keyColumns=["id"]).apply(make_workbook(KEYED))
        assert result.sheet_names == ["A"]
        assert values(result.get_sheet("A")) == [["id", "value"], [1, "x"], [2, "y"], [3, "w"]]

    def test_keyed_keep_last(self, make_workbook, values):
        """Test that the later row replaces the earlier one in place."""
        result = merge("keepLast", keyColumns=["id"]).apply(make_workbook(KEYED))
        assert values(result.get_sheet("A")) == [["id", "value"], [1, "x"], [2, "z"], [3, "w"]]

    def test_keyed_error(self, make_workbook):
        workbook = make_workbook(KEYED)
        with pytest.raises(MergeConflictError) as exc_info:
            merge("error", keyColumns=["id"]).apply(workbook)
        error = exc_info.value
        assert error.error_code == "MERGE_CONFLICT"
        assert error.sheet == "B"
        assert error.row == 1
        assert error.key == [2]
        assert workbook.sheet_names == ["A", "B"]

    def test_identical_rows_still_conflict(self, make_workbook):
        workbook = make_workbook({"A": [["id"], [1]], "B": [["id"], [1]]})
        with pytest.raises(MergeConflictError):
            merge("error", keyColumns=["id"]).apply(workbook)

    def test_rows_without_key_never_conflict(self, make_workbook, values):
        workbook = make_workbook({"A": [["id", "v"], [None, "a"]], "B": [["id", "v"], [None, "b"]]})
        result = merge("error", keyColumns=["id"]).apply(workbook)
        assert values(result.get_sheet("A"))[1:] == [[None, "a"], [None, "b"]]

    def test_deterministic(self, make_workbook):
        workbook = make_workbook(KEYED)
        first = merge("keepLast", keyColumns=["id"]).apply(workbook)
        second = merge("keepLast", keyColumns=["id"]).apply(workbook)
        assert first.value_equals(second)

    def test_overlay_merge(self, make_workbook, values):
        """Test cell-by-cell merging without key columns."""
        workbook = make_workbook({"A": [["id", "value"], [1]], "B": [["id", "value"], [None, "x"]]})
        result = merge("error").apply(workbook)
        assert values(result.get_sheet("A")) == [["id", "value"], [1, "x"]]

    def test_overlay_conflict(self, make_workbook, values):
        workbook = make_workbook({"A": [["id", "value"], [1, "x"]], "B": [["id", "value"], [1, "y"]]})
        with pytest.raises(MergeConflictError) as exc_info:
            merge("error").apply(workbook)
        assert (exc_info.value.row, exc_info.value.column) == (1, 1)

        result = merge("keepLast").apply(workbook)
        assert values(result.get_sheet("A"))[1] == [1, "y"]

    def test_target_and_keep_sources(self, make_workbook):
        workbook = make_workbook({"Intro": [["hi"]], **KEYED})
        options = {"sources": ["A", "B"], "keyColumns": ["id"], "target": "All"}
        result = merge("keepFirst", keepSources=True, **options).apply(workbook)
        assert result.sheet_names == ["Intro", "A", "All", "B"]

        result = merge("keepFirst", **options).apply(workbook)
        assert result.sheet_names == ["Intro", "All"]

    def test_target_taken_by_other_sheet(self, make_workbook):
        workbook = make_workbook({"Intro": [["hi"]], **KEYED})
        with pytest.raises(DuplicateSheetError):
            merge("keepFirst", sources=["A", "B"], target="Intro").apply(workbook)

    def test_unknown_source(self, make_workbook):
        with pytest.raises(SheetNotFoundError):
            merge("keepFirst", sources=["A", "C"]).apply(make_workbook(KEYED))

    def test_widths_unioned(self, make_workbook):
        workbook = make_workbook(KEYED)
        workbook.get_sheet("A").column_widths[0] = 9.0
        workbook.get_sheet("B").column_widths.update({0: 30.0, 1: 12.0})
        result = merge("keepFirst", keyColumns=["id"]).apply(workbook)
        assert result.get_sheet("A").column_widths == {0: 9.0, 1: 12.0}

    def test_short_missing_key_column(self, make_workbook):
        """Test that key column "key" is not read as column letters KEY."""
        workbook = make_workbook({"A": [["id", "v"], [1, "x"]], "B": [["id", "v"], [1, "y"]]})
        with pytest.raises(ColumnNotFoundError) as exc_info:
            merge("error", keyColumns=["key"]).apply(workbook)
        assert exc_info.value.column_ref == "key"

    def test_default_sources_skip_blank_sheets(self, make_workbook, values):
        workbook = make_workbook({**KEYED, "Blank": []})
        result = merge("keepFirst", keyColumns=["id"]).apply(workbook)
        assert result.sheet_names == ["A", "Blank"]
        assert values(result.get_sheet("A"))[1:] == [[1, "x"], [2, "y"], [3, "w"]]


class TestRemapColumns:
    """Tests for the remapColumns stage."""

    def test_swap_columns_with_widths(self, make_workbook, values):
        workbook = make_workbook(SALES)
        workbook.get_sheet("Sales").column_widths.update({0: 10.0, 1: 20.0})
        result = stage({"op": "remapColumns", "mapping": {"region": "B", "amt": "A"}}).apply(workbook)
        sales = result.get_sheet("Sales")
        assert values(sales)[:2] == [["amt", "region"], [10, "East"]]
        assert sales.column_widths == {0: 20.0, 1: 10.0}

    def test_collision(self, make_workbook):
        """Test that moving onto an occupied, unmapped column fails."""
        with pytest.raises(RemapCollisionError) as exc_info:
            stage({"op": "remapColumns", "mapping": {"amt": "A"}}).apply(make_workbook(SALES))
        assert exc_info.value.destination == 0
        assert exc_info.value.sources == [0, 1]

    def test_two_sources_same_destination(self, make_workbook):
        with pytest.raises(RemapCollisionError):
            stage({"op": "remapColumns", "mapping": {"region": "D", "amt": "D"}}).apply(
                make_workbook(SALES)
            )

    def test_drop_unmapped(self, make_workbook, values):
        result = stage(
            {"op": "remapColumns", "mapping": {"amt": "A"}, "dropUnmapped": True}
        ).apply(make_workbook(SALES))
        assert values(result.get_sheet("Sales"))[:2] == [["amt"], [10]]

    def test_move_to_empty_column(self, make_workbook, values):
        result = stage({"op": "remapColumns", "mapping": {"amt": "D"}}).apply(make_workbook(SALES))
        assert values(result.get_sheet("Sales"))[1] == ["East", None, None, 10]

    def test_source_mapped_twice(self, make_workbook):
        with pytest.raises(ValidationError):
            stage({"op": "remapColumns", "mapping": {"amt": "C", "$B": "D"}}).apply(
                make_workbook(SALES)
            )

    def test_invalid_destination(self, make_workbook):
        with pytest.raises(ColumnNotFoundError):
            stage({"op": "remapColumns", "mapping": {"amt": "??"}}).apply(make_workbook(SALES))


class TestSortRows:
    """Tests for the sortRows stage."""

    def test_ascending_with_empties_last(self, make_workbook, values):
        workbook = make_workbook(SALES)
        result = stage({"op": "sortRows", "by": [{"column": "amt"}]}).apply(workbook)
        assert [row[0] for row in values(result.get_sheet("Sales"))] == [
            "region",
            "East",
            "West",
            "east",
            "North",
        ]

    def test_descending_keeps_empties_last(self, make_workbook, values):
        workbook = make_workbook(SALES)
        result = stage({"op": "sortRows", "by": [{"column": "amt", "descending": True}]}).apply(
            workbook
        )
        assert [row[0] for row in values(result.get_sheet("Sales"))[1:]] == [
            "east",
            "West",
            "East",
            "North",
        ]

    def test_multi_key_is_stable(self, make_workbook, values):
        workbook = make_workbook(
            {"T": [["team", "score"], ["a", 1], ["b", 2], ["a", 2], ["b", 1], ["a", 1.0]]}
        )
        result = stage(
            {
                "op": "sortRows",
                "by": [{"column": "team"}, {"column": "score", "descending": True}],
            }
        ).apply(workbook)
        assert values(result.get_sheet("T"))[1:] == [
            ["a", 2],
            ["a", 1],
            ["a", 1.0],
            ["b", 2],
            ["b", 1],
        ]

    def test_numbers_before_text(self, make_workbook, values):
        workbook = make_workbook({"M": [["v"], ["b"], [2], ["a"], [1]]})
        result = stage({"op": "sortRows", "by": [{"column": "v"}]}).apply(workbook)
        assert [row[0] for row in values(result.get_sheet("M"))[1:]] == [1, 2, "a", "b"]

    def test_row_positions_preserved(self, make_workbook):
        workbook = make_workbook({"G": [["v"], [3], [], [1]]})
        result = stage({"op": "sortRows", "by": [{"column": "v"}]}).apply(workbook)
        sheet = result.get_sheet("G")
        assert sheet.row_indices() == [0, 1, 3]
        assert sheet.get(1, 0).value == 1
        assert sheet.get(3, 0).value == 3

    def test_short_missing_sort_column(self, make_workbook):
        with pytest.raises(ColumnNotFoundError):
            stage({"op": "sortRows", "by": [{"column": "qty"}]}).apply(make_workbook(SALES))

    def test_default_scope_skips_blank_sheet(self, make_workbook, values):
        workbook = make_workbook({**SALES, "Blank": []})
        result = stage({"op": "sortRows", "by": [{"column": "amt", "descending": True}]}).apply(
            workbook
        )
        assert values(result.get_sheet("Sales"))[1] == ["east", 30]
        assert result.get_sheet("Blank").is_empty


REQUESTS = {
    "Requests": [
        ["kind", "time", "ts"],
        ["static", 10, 0],
        ["dynamic", 40, 1000],
        ["static", 20, 2000],
        ["dynamic", 60, 3000],
        ["static", 30, 4000],
    ]
}


def aggregate(**options: Any):
    return stage({"op": "aggregateRows", "value": "time", **options})


class TestAggregateRows:
    """Tests for the aggregateRows stage."""

    def test_group_by(self, make_workbook, values):
        workbook = make_workbook(REQUESTS)
        result = aggregate(groupBy=["kind"], metrics=["count", "sum", "mean", "min", "max"]).apply(
            workbook
        )
        assert result.sheet_names == ["Requests", "Requests Stats"]
        assert values(result.get_sheet("Requests Stats")) == [
            ["kind", "count", "sum", "mean", "min", "max"],
            ["static", 3, 60, 20.0, 10, 30],
            ["dynamic", 2, 100, 50.0, 40, 60],
        ]
        assert workbook.sheet_names == ["Requests"]

    def test_nearest_rank_percentiles(self, make_workbook, values):
        """Test that pNN picks the value at ceil(NN/100 * n) - 1."""
        workbook = make_workbook({"T": [["time"]] + [[v] for v in range(1, 11)]})
        result = aggregate(metrics=["p10", "p50", "p90", "p95", "p100"]).apply(workbook)
        assert values(result.get_sheet("T Stats")) == [
            ["p10", "p50", "p90", "p95", "p100"],
            [1, 5, 9, 10, 10],
        ]

    def test_population_variance(self, make_workbook, values):
        rows = [["g", "time"]] + [["a", v] for v in (2, 4, 4, 4, 5, 5, 7, 9)] + [["b", 3]]
        result = aggregate(groupBy=["g"], metrics=["variance"]).apply(make_workbook({"T": rows}))
        assert values(result.get_sheet("T Stats"))[1:] == [["a", 4], ["b", 0]]

    def test_default_metrics(self, make_workbook, values):
        result = aggregate().apply(make_workbook(REQUESTS))
        header, row = values(result.get_sheet("Requests Stats"))
        assert header == ["count", "sum", "mean", "variance", "p90", "p95", "p99", "min", "max"]
        assert row[:3] == [5, 160, 32.0]
        assert row[4:] == [60, 60, 60, 10, 60]

    def test_time_buckets_and_rate(self, make_workbook):
        """Test per-minute buckets of epoch millisecond timestamps."""
        rows = [["time", "ts"], [5, 0], [6, 30_000], [7, 59_999], [8, 60_000], [9, 125_000]]
        result = aggregate(timestamp="ts", bucketSeconds=60, metrics=["count", "rate"]).apply(
            make_workbook({"Log": rows})
        )
        summary = result.get_sheet("Log Stats")
        assert [summary.get(r, 1).value for r in (1, 2, 3)] == [3, 1, 1]
        assert summary.get(1, 0).value == pytest.approx(to_excel(datetime(1970, 1, 1, 0, 0)))
        assert summary.get(3, 0).value == pytest.approx(to_excel(datetime(1970, 1, 1, 0, 2)))
        assert result.styles.get(summary.get(1, 0).style_id).number_format == "yyyy-mm-dd hh:mm"
        assert summary.get(1, 2).value == pytest.approx(3 * 1000 / 59_999)
        assert summary.get(2, 2) is None

    def test_cumulative_steps(self, make_workbook, values):
        """Test that each batch row covers all of the group's rows so far."""
        result = aggregate(groupBy=["kind"], step=2, metrics=["count", "max"]).apply(
            make_workbook(REQUESTS)
        )
        assert values(result.get_sheet("Requests Stats")) == [
            ["kind", "rows", "count", "max"],
            ["static", 2, 1, 10],
            ["static", 4, 2, 20],
            ["static", 6, 3, 30],
            ["dynamic", 2, 1, 40],
            ["dynamic", 4, 2, 60],
        ]

    def test_empty_values_skipped(self, make_workbook, values):
        workbook = make_workbook({"T": [["g", "time"], ["a", 1], ["a", None], ["b", None]]})
        result = aggregate(groupBy=["g"], metrics=["count"]).apply(workbook)
        assert values(result.get_sheet("T Stats")) == [["g", "count"], ["a", 1]]

    def test_text_value_rejected(self, make_workbook):
        workbook = make_workbook({"T": [["time"], [1], ["slow"]]})
        with pytest.raises(UnsupportedValueError) as exc_info:
            aggregate(metrics=["sum"]).apply(workbook)
        assert (exc_info.value.sheet, exc_info.value.row, exc_info.value.column) == ("T", 2, 0)

    def test_summary_sheet_layout(self, make_workbook):
        workbook = make_workbook({"Intro": [["hello"]], **REQUESTS, "End": [["x"]]})
        result = aggregate(sheet="Requests", target="Timing", groupBy=["kind"]).apply(workbook)
        assert result.sheet_names == ["Intro", "Requests", "Timing", "End"]
        summary = result.get_sheet("Timing")
        header = result.styles.get(summary.get(0, 0).style_id)
        assert header.font.bold
        assert header.fill.pattern_type == "solid"
        assert header.alignment.horizontal == "center"
        assert summary.freeze_panes == "A2"
        assert summary.column_widths[0] == len("dynamic") + 2

    def test_target_collision(self, make_workbook):
        workbook = make_workbook({**REQUESTS, "Timing": [["x"]]})
        with pytest.raises(DuplicateSheetError):
            aggregate(target="Timing").apply(workbook)

    def test_default_target_is_unique(self, make_workbook):
        workbook = make_workbook({**REQUESTS, "Requests Stats": [["old"]]})
        result = aggregate(metrics=["count"]).apply(workbook)
        assert result.sheet_names == ["Requests", "Requests Stats (2)", "Requests Stats"]

    def test_short_missing_value_column(self, make_workbook):
        with pytest.raises(ColumnNotFoundError):
            stage({"op": "aggregateRows", "value": "tm"}).apply(make_workbook(REQUESTS))

    @pytest.mark.parametrize(
        "options",
        [
            {"metrics": ["median"]},
            {"metrics": ["p0"]},
            {"metrics": ["count", "count"]},
            {"metrics": ["rate"]},
            {"bucketSeconds": 60},
            {"step": 0},
        ],
    )
    def test_invalid_options(self, options):
        with pytest.raises(ValidationError):
            validate_stages([{"op": "aggregateRows", "value": "time", **options}])


class TestSheetStages:
    """Tests for selectSheets and renameSheet."""

    def test_select_reorders(self, make_workbook):
        result = stage({"op": "selectSheets", "sheets": ["B", "A"]}).apply(make_workbook(KEYED))
        assert result.sheet_names == ["B", "A"]

    def test_select_duplicate(self, make_workbook):
        with pytest.raises(DuplicateSheetError):
            stage({"op": "selectSheets", "sheets": ["A", "A"]}).apply(make_workbook(KEYED))

    def test_select_missing(self, make_workbook):
        with pytest.raises(SheetNotFoundError):
            stage({"op": "selectSheets", "sheets": ["C"]}).apply(make_workbook(KEYED))

    def test_rename(self, make_workbook):
        workbook = make_workbook(KEYED)
        result = stage({"op": "renameSheet", "from": "A", "to": "First"}).apply(workbook)
        assert result.sheet_names == ["First", "B"]
        assert workbook.sheet_names == ["A", "B"]

    def test_rename_case_only(self, make_workbook):
        result = stage({"op": "renameSheet", "from": "A", "to": "a"}).apply(make_workbook(KEYED))
        assert result.sheet_names == ["a", "B"]

    def test_rename_collision(self, make_workbook):
        with pytest.raises(DuplicateSheetError):
            stage({"op": "renameSheet", "from": "A", "to": "b"}).apply(make_workbook(KEYED))

    def test_rename_keeps_cells(self, make_workbook):
        workbook = make_workbook(KEYED)
        workbook.get_sheet("A").put(Cell.from_value(5, 5, "tail"))
        result = stage({"op": "renameSheet", "from": "A", "to": "First"}).apply(workbook)
        assert result.get_sheet("First").get(5, 5).value == "tail"
