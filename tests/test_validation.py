"""Tests for workflow definition validation."""

import pytest

from conftest import condition_graph, edge, linear_graph, node
from models.workflow import WorkflowGraph, get_next_node_id, validate_node_config
from services.validation import validate_definition, validate_definition_payload


def validate(graph):
    return validate_definition(WorkflowGraph.model_validate(graph))


class TestValidDefinitions:
    def test_minimal_start_end_is_valid(self):
        result = validate(linear_graph())

        assert result.is_valid
        assert result.errors == []

    def test_full_outreach_sequence_is_valid(self):
        graph = linear_graph(
            node("intro", "SMS_TEMPLATE", template="Hi {{lead.firstName}}"),
            node("wait", "DELAY", duration=2, unit="days", respectBusinessHours=True,
                 businessHours={"start": "09:00", "end": "17:00",
                                "timezone": "America/Chicago", "daysOfWeek": [1, 2, 3, 4, 5]}),
            node("followup", "SMS_AI", systemPrompt="Be brief", temperature=0.4,
                 promptOverrides={"goal": "book a visit"}),
        )

        assert validate(graph).is_valid

    def test_condition_graph_is_valid(self):
        assert validate(condition_graph()).is_valid

    def test_exists_operator_needs_no_value(self):
        assert validate(condition_graph(operator="exists", value=None)).is_valid


class TestStructure:
    def test_missing_start_and_end(self):
        result = validate({"nodes": [node("a", "SMS_TEMPLATE", template="x")], "edges": []})

        assert "MISSING_START" in result.codes
        assert "MISSING_END" in result.codes
        # Connectivity is skipped when START or END is absent
        assert "ORPHAN_NODE" not in result.codes

    def test_multiple_start_and_end(self):
        graph = linear_graph()
        graph["nodes"] += [node("start2", "START"), node("end2", "END")]
        graph["edges"].append(edge("start2", "end2"))

        result = validate(graph)

        assert "MULTIPLE_START" in result.codes
        assert "MULTIPLE_END" in result.codes

    def test_duplicate_node_and_edge_ids(self):
        graph = linear_graph(node("msg", "SMS_TEMPLATE", template="x"))
        graph["nodes"].append(node("msg", "SMS_TEMPLATE", template="y"))
        graph["edges"].append(dict(graph["edges"][0]))

        result = validate(graph)

        assert "DUPLICATE_NODE_ID" in result.codes
        assert "DUPLICATE_EDGE_ID" in result.codes


class TestNodeConfig:
    def test_missing_template(self):
        result = validate(linear_graph(node("msg", "SMS_TEMPLATE", template="   ")))

        assert result.codes == ["MISSING_TEMPLATE"]
        assert result.errors[0].node_id == "msg"

    @pytest.mark.parametrize("duration", [0, -5, None])
    def test_invalid_delay_duration(self, duration):
        result = validate(linear_graph(node("wait", "DELAY", duration=duration, unit="hours")))

        assert result.codes == ["INVALID_DELAY_DURATION"]

    def test_invalid_delay_unit(self):
        result = validate(linear_graph(node("wait", "DELAY", duration=3, unit="weeks")))

        assert result.codes == ["INVALID_DELAY_UNIT"]

    @pytest.mark.parametrize("hours", [
        {"start": "17:00", "end": "09:00"},
        {"start": "9am", "end": "17:00"},
        {"daysOfWeek": []},
        {"daysOfWeek": [7]},
        {"timezone": "Mars/Olympus_Mons"},
    ])
    def test_invalid_business_hours(self, hours):
        wait = node("wait", "DELAY", duration=1, unit="hours",
                    respectBusinessHours=True, businessHours=hours)

        assert validate(linear_graph(wait)).codes == ["INVALID_BUSINESS_HOURS"]

    def test_business_hours_ignored_when_not_respected(self):
        wait = node("wait", "DELAY", duration=1, unit="hours",
                    respectBusinessHours=False, businessHours={"start": "17:00", "end": "09:00"})

        assert validate(linear_graph(wait)).is_valid

    def test_condition_field_operator_and_value(self):
        assert "MISSING_CONDITION_FIELD" in validate(condition_graph(field="")).codes
        assert "INVALID_CONDITION_OPERATOR" in validate(condition_graph(operator="greater_than")).codes
        assert "MISSING_CONDITION_VALUE" in validate(condition_graph(value="")).codes
        assert "MISSING_CONDITION_VALUE" in validate(condition_graph(value=None)).codes

    def test_temperature_out_of_range(self):
        result = validate(linear_graph(node("ai", "SMS_AI", temperature=3.5)))

        assert result.codes == ["INVALID_TEMPERATURE"]


class TestEdges:
    def test_edge_endpoints_must_exist(self):
        graph = linear_graph()
        graph["edges"].append({"id": "ghost", "source": "nowhere", "target": "void"})

        result = validate(graph)

        assert "INVALID_EDGE_SOURCE" in result.codes
        assert "INVALID_EDGE_TARGET" in result.codes

    def test_missing_outgoing_edge(self):
        graph = linear_graph(node("msg", "SMS_TEMPLATE", template="x"))
        graph["edges"] = [edge("start", "msg")]

        result = validate(graph)

        assert "MISSING_OUTGOING_EDGE" in result.codes
        assert "NO_PATH_TO_END" in result.codes
        assert "ORPHAN_NODE" in result.codes

    def test_too_many_outgoing_edges(self):
        graph = linear_graph(node("msg", "SMS_TEMPLATE", template="x"))
        graph["edges"].append(edge("start", "end"))

        result = validate(graph)

        assert result.codes == ["TOO_MANY_OUTGOING_EDGES"]

    def test_label_on_non_condition_edge(self):
        graph = linear_graph()
        graph["edges"][0]["label"] = "true"

        result = validate(graph)

        assert result.codes == ["UNEXPECTED_EDGE_LABEL"]
        assert result.errors[0].edge_id == "e-start-end"

    def test_condition_needs_true_and_false(self):
        graph = condition_graph()
        graph["edges"] = [e for e in graph["edges"] if e.get("label") != "false"]
        graph["edges"].append(edge("start", "cold"))

        result = validate(graph)

        assert "INVALID_CONDITION_EDGES" in result.codes
        assert "MISSING_FALSE_BRANCH" in result.codes
        assert "MISSING_TRUE_BRANCH" not in result.codes

    def test_condition_edge_with_unknown_label(self):
        graph = condition_graph()
        graph["edges"][2]["label"] = "maybe"

        result = validate(graph)

        assert "UNEXPECTED_EDGE_LABEL" in result.codes
        assert "MISSING_FALSE_BRANCH" in result.codes
        flagged = [e for e in result.errors if e.code == "UNEXPECTED_EDGE_LABEL"]
        assert [e.edge_id for e in flagged] == ["e-check-cold"]

    def test_end_must_not_have_outgoing(self):
        graph = linear_graph(node("msg", "SMS_TEMPLATE", template="x"))
        graph["edges"].append(edge("end", "msg"))

        result = validate(graph)

        assert "END_NODE_HAS_OUTGOING" in result.codes


class TestGraphShape:
    def test_orphan_node(self):
        graph = linear_graph()
        graph["nodes"].append(node("lonely", "SMS_TEMPLATE", template="x"))
        graph["edges"].append(edge("lonely", "end"))

        result = validate(graph)

        assert result.codes == ["ORPHAN_NODE"]
        assert result.errors[0].node_id == "lonely"

    def test_cycle_reported_once(self):
        graph = {
            "nodes": [
                node("start", "START"),
                node("a", "SMS_TEMPLATE", template="a"),
                node("b", "SMS_TEMPLATE", template="b"),
                node("c", "SMS_TEMPLATE", template="c"),
                node("end", "END"),
            ],
            "edges": [
                edge("start", "a"),
                edge("a", "b"),
                edge("b", "c"),
                edge("c", "a"),
            ],
        }

        result = validate(graph)

        assert result.codes.count("CYCLE_DETECTED") == 1
        assert "NO_PATH_TO_END" in result.codes
        assert "ORPHAN_NODE" in result.codes

    def test_errors_accumulate_across_passes(self):
        graph = linear_graph(node("msg", "SMS_TEMPLATE", template=""))
        graph["nodes"].append(node("start", "START"))

        result = validate(graph)

        assert {"MULTIPLE_START", "DUPLICATE_NODE_ID", "MISSING_TEMPLATE"} <= set(result.codes)
        assert not result.is_valid


class TestPayloadValidation:
    def test_unknown_node_type(self):
        result = validate_definition_payload({
            "nodes": [node("start", "START"), {"id": "x", "type": "EMAIL", "config": {}}],
            "edges": [],
        })

        assert result.codes == ["UNKNOWN_NODE_TYPE"]
        assert result.errors[0].node_id == "x"

    def test_malformed_config_field(self):
        result = validate_definition_payload({
            "nodes": [node("wait", "DELAY", duration="soon", unit="hours")],
            "edges": [],
        })

        assert result.codes == ["INVALID_CONFIG"]

    @pytest.mark.parametrize("config", ["hello", ["a", "b"], 7])
    def test_non_object_config(self, config):
        result = validate_definition_payload({
            "nodes": [{"id": "s", "type": "START", "config": config}],
            "edges": [],
        })

        assert set(result.codes) == {"INVALID_CONFIG"}
        assert result.errors[0].node_id == "s"

    def test_null_config_is_empty(self):
        graph = linear_graph()
        graph["nodes"][0]["config"] = None

        assert validate_definition_payload(graph).is_valid

    def test_unknown_end_reason(self):
        graph = linear_graph()
        graph["nodes"][1]["config"]["reason"] = "bored"

        result = validate_definition_payload(graph)

        assert result.codes == ["INVALID_CONFIG"]
        assert result.errors[0].node_id == "end"

    def test_known_end_reason(self):
        graph = linear_graph()
        graph["nodes"][1]["config"]["reason"] = "no_response"

        assert validate_definition_payload(graph).is_valid

    def test_edge_missing_source(self):
        result = validate_definition_payload({
            "nodes": [],
            "edges": [{"id": "e1", "target": "end"}],
        })

        assert result.codes == ["INVALID_SCHEMA"]
        assert result.errors[0].edge_id == "e1"

    def test_valid_payload_runs_graph_passes(self):
        assert validate_definition_payload(linear_graph()).is_valid
        assert validate_definition_payload({"nodes": [], "edges": []}).codes == ["MISSING_START", "MISSING_END"]


class TestGraphModel:
    def test_config_inherits_node_type(self):
        config = validate_node_config("DELAY", {"duration": 5, "unit": "minutes", "respectBusinessHours": True})

        assert config.type == "DELAY"
        assert config.respect_business_hours is True
        assert config.business_hours is None

    def test_condition_value_is_text(self):
        assert validate_node_config("CONDITION", {"field": "x", "operator": "equals", "value": True}).value == "true"
        assert validate_node_config("CONDITION", {"field": "x", "operator": "equals", "value": 42}).value == "42"

    def test_get_next_node_id(self):
        graph = WorkflowGraph.model_validate(condition_graph())

        assert get_next_node_id(graph, "start") == "check"
        assert get_next_node_id(graph, "check", "true") == "hot"
        assert get_next_node_id(graph, "check", "false") == "cold"
        assert get_next_node_id(graph, "check", "maybe") is None
        assert get_next_node_id(graph, "end") is None
