"""Tests for the placeholder variable injection stage."""

import pytest

from context_engine.models import ConversationMessage, MessageRole, PipelineContext
from context_engine.placeholders import PlaceholderVariableInjector
from context_engine.templating import TemplateVariableError


@pytest.fixture
def templated_context():
    return PipelineContext(messages=[
        ConversationMessage(id="sys", role=MessageRole.SYSTEM, content="You help {{company}} customers."),
        ConversationMessage(id="u1", role=MessageRole.USER, content="I am {{{user}}} and I use {{ missing }}."),
        ConversationMessage(id="a1", role=MessageRole.ASSISTANT, content="No placeholders here."),
        ConversationMessage(id="u2", role=MessageRole.USER, content="{% if premium %}Priority{% else %}Standard{% endif %} support"),
    ])


class TestPlaceholderVariableInjector:

    def test_no_variables_is_noop(self, templated_context):
        stage = PlaceholderVariableInjector()

        result = stage.run(templated_context)

        assert [m.content for m in result.messages] == [m.content for m in templated_context.messages]
        assert "placeholders_processed" not in result.metadata
        assert result.is_executed("PlaceholderVariableInjector")

    def test_expands_messages_and_isolates_failures(self, templated_context):
        stage = PlaceholderVariableInjector({"company": "Acme", "user": "<Ada>", "premium": True})

        result = stage.run(templated_context)

        assert result.messages[0].content == "You help Acme customers."
        # Undefined variable: message kept as-is
        assert result.messages[1].content == "I am {{{user}}} and I use {{ missing }}."
        assert result.messages[2].content == "No placeholders here."
        assert result.messages[3].content == "Priority support"
        assert len(result.messages) == 4

        assert result.metadata["placeholders_processed"] == 2
        assert result.metadata["placeholder_errors"] == 1
        assert result.metadata["available_variables"] == ["company", "user", "premium"]
        assert result.is_executed(stage.name)

    def test_escapes_triple_brace_values(self):
        context = PipelineContext(messages=[
            ConversationMessage(role=MessageRole.USER, content="Hi {{{user}}}, raw: {{user}}"),
        ])

        result = PlaceholderVariableInjector({"user": "<Ada>"}).run(context)

        assert result.messages[0].content == "Hi &lt;Ada&gt;, raw: <Ada>"

    def test_unchanged_expansion_is_not_counted(self):
        context = PipelineContext(messages=[
            ConversationMessage(role=MessageRole.USER, content="{{same}}"),
        ])

        result = PlaceholderVariableInjector({"same": "{{same}}"}).run(context)

        assert result.messages[0].content == "{{same}}"
        assert result.metadata["placeholders_processed"] == 0
        assert result.metadata["placeholder_errors"] == 0

    def test_does_not_mutate_input(self, templated_context):
        PlaceholderVariableInjector({"company": "Acme", "premium": False}).run(templated_context)

        assert templated_context.messages[0].content == "You help {{company}} customers."
        assert templated_context.metadata == {}
        assert templated_context.executed_stages == []

    def test_logs_failed_expansion(self, templated_context, log_records):
        PlaceholderVariableInjector({"company": "Acme", "user": "Ada", "premium": True}).run(templated_context)

        warnings = [r for r in log_records if r["level"].name == "WARNING"]
        assert len(warnings) == 1
        assert "Placeholder expansion failed" in warnings[0]["message"]

    def test_oversized_expansion_counts_as_error(self):
        context = PipelineContext(messages=[
            ConversationMessage(id="bomb", role=MessageRole.USER, content="{{ 'a' * 50000000 }}{{name}}"),
            ConversationMessage(id="ok", role=MessageRole.USER, content="Hi {{name}}\r\n"),
        ])

        result = PlaceholderVariableInjector({"name": "Ada"}).run(context)

        assert result.messages[0].content == "{{ 'a' * 50000000 }}{{name}}"
        assert result.messages[1].content == "Hi Ada\r\n"
        assert result.metadata["placeholder_errors"] == 1
        assert result.metadata["placeholders_processed"] == 1

    def test_variables_can_change_between_runs(self):
        context = PipelineContext(messages=[
            ConversationMessage(role=MessageRole.USER, content="Hello {{name}}"),
        ])
        stage = PlaceholderVariableInjector({"name": "Ada"})

        first = stage.run(context)
        stage.add_variable("name", "Grace")
        second = stage.run(context)

        assert first.messages[0].content == "Hello Ada"
        assert second.messages[0].content == "Hello Grace"


class TestPreview:

    def test_preview_expansion(self):
        stage = PlaceholderVariableInjector({"name": "World"})

        preview = stage.preview("Hello {{name}}")

        assert preview.original == "Hello {{name}}"
        assert preview.processed == "Hello World"
        assert preview.has_changes is True

    def test_preview_without_markers(self):
        preview = PlaceholderVariableInjector({"name": "World"}).preview("Hello")

        assert preview.processed == "Hello"
        assert preview.has_changes is False

    def test_preview_failure_falls_back(self):
        preview = PlaceholderVariableInjector({"name": "World"}).preview("Hello {{nobody}}")

        assert preview.processed == "Hello {{nobody}}"
        assert preview.has_changes is False

    def test_extract_placeholders(self):
        stage = PlaceholderVariableInjector()

        assert stage.extract_placeholders("{{a}} {{{b}}} {% c %} {{a}}") == {"a", "b", "c"}


class TestVariableManagement:

    def test_mutators_chain(self):
        stage = PlaceholderVariableInjector()

        returned = stage.set_variables({"a": 1, "b": 2}).add_variable("c", 3).remove_variable("a")

        assert returned is stage
        assert stage.get_variables() == {"b": 2, "c": 3}

    def test_remove_unknown_variable_is_ignored(self):
        stage = PlaceholderVariableInjector({"a": 1})

        stage.remove_variable("missing")

        assert stage.get_variables() == {"a": 1}

    def test_get_variables_returns_copy(self):
        stage = PlaceholderVariableInjector({"a": 1})

        stage.get_variables()["a"] = 99

        assert stage.get_variables() == {"a": 1}

    def test_set_variables_copies_input(self):
        source = {"a": 1}
        stage = PlaceholderVariableInjector().set_variables(source)

        source["a"] = 2

        assert stage.get_variables() == {"a": 1}

    def test_clear_variables(self):
        stage = PlaceholderVariableInjector({"a": 1}).clear_variables()

        assert stage.get_variables() == {}

    def test_rejects_unsupported_values(self):
        stage = PlaceholderVariableInjector()

        with pytest.raises(TemplateVariableError):
            stage.add_variable("handler", object())
        with pytest.raises(TemplateVariableError):
            PlaceholderVariableInjector({"handler": lambda: None})
        assert stage.get_variables() == {}
