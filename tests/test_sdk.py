"""
Unit tests for SDK layer.

Tests OpenAI client wrapper admission and usage recording.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest

from llm_meter.config.loader import BudgetLimit, DailyLimits
from llm_meter.core.meter import UsageMeter
from llm_meter.errors import BudgetExceededError, StorageUnavailableError
from llm_meter.sdk.openai_client import MeteredOpenAI
from llm_meter.storage.models import Attribution, LLMProvider

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


def make_response(request_id="chat_123", prompt=100, completion=50):
    response = Mock()
    response.id = request_id
    response.usage.prompt_tokens = prompt
    response.usage.completion_tokens = completion
    response.usage.total_tokens = prompt + completion
    return response


class TestMeteredOpenAI:
    """Test MeteredOpenAI client wrapper."""

    def setup_method(self):
        """Set up test environment."""
        self.meter = UsageMeter(clock=lambda: NOW)
        self.client = Mock()
        self.client.chat.completions.create.return_value = make_response()

    def recorded(self):
        return self.meter.export(NOW - timedelta(days=1), NOW)

    @patch('llm_meter.sdk.openai_client.OpenAI')
    def test_init_default_client(self, mock_openai_class):
        """Test initialization builds an OpenAI client when none is given."""
        mock_openai_class.return_value = Mock()

        wrapper = MeteredOpenAI(self.meter, model="gpt-4")

        assert wrapper.model == "gpt-4"
        assert wrapper.client is mock_openai_class.return_value
        assert wrapper.attribution == Attribution()

    def test_init_missing_model(self):
        """Test initialization fails with missing model."""
        with pytest.raises(ValueError, match="model is required"):
            MeteredOpenAI(self.meter, model="", client=self.client)

        with pytest.raises(ValueError, match="model is required"):
            MeteredOpenAI(self.meter, model="   ", client=self.client)

    def test_init_missing_meter(self):
        with pytest.raises(ValueError, match="meter is required"):
            MeteredOpenAI(None, model="gpt-4", client=self.client)

    def test_chat_success_records_event(self):
        """Test successful chat call records usage event."""
        wrapper = MeteredOpenAI(
            self.meter,
            model="gpt-4",
            attribution=Attribution(customer_id="cust-9", agent_id="support-bot"),
            client=self.client
        )

        messages = [{"role": "user", "content": "Hello"}]
        response = wrapper.chat(messages=messages)

        self.client.chat.completions.create.assert_called_once_with(
            model="gpt-4",
            messages=messages,
            temperature=None,
            max_tokens=None
        )
        assert response is self.client.chat.completions.create.return_value

        events = self.recorded()
        assert len(events) == 1
        event = events[0]
        assert event.provider == LLMProvider.OPENAI
        assert event.model == "gpt-4"
        assert event.prompt_tokens == 100
        assert event.completion_tokens == 50
        assert event.total_tokens == 150
        assert event.request_id == "chat_123"
        assert event.customer_id == "cust-9"
        assert event.agent_id == "support-bot"
        # gpt-4: 100 * $30/M + 50 * $60/M
        assert event.cost == pytest.approx(0.006)
        assert self.meter.get_daily_usage() == pytest.approx(0.006)

    def test_chat_with_optional_parameters(self):
        """Test chat call forwards optional parameters."""
        wrapper = MeteredOpenAI(self.meter, model="gpt-3.5-turbo", client=self.client)
        messages = [{"role": "user", "content": "Hello"}]

        wrapper.chat(messages=messages, temperature=0.7, max_tokens=1000, top_p=0.9)

        self.client.chat.completions.create.assert_called_once_with(
            model="gpt-3.5-turbo",
            messages=messages,
            temperature=0.7,
            max_tokens=1000,
            top_p=0.9
        )

    def test_empty_messages_rejected(self):
        wrapper = MeteredOpenAI(self.meter, model="gpt-4", client=self.client)
        with pytest.raises(ValueError, match="messages is required"):
            wrapper.chat(messages=[])
        self.client.chat.completions.create.assert_not_called()

    def test_budget_exceeded_blocks_call(self):
        """Test a denied admission never reaches OpenAI."""
        self.meter.replace_limits(BudgetLimit(daily=DailyLimits(total=1.0)))
        wrapper = MeteredOpenAI(self.meter, model="gpt-4", client=self.client)

        with pytest.raises(BudgetExceededError) as excinfo:
            wrapper.chat([{"role": "user", "content": "Hello"}], estimated_cost=2.0)

        assert excinfo.value.reason.startswith("Daily budget limit exceeded")
        self.client.chat.completions.create.assert_not_called()
        assert self.recorded() == []

    def test_customer_budget_uses_wrapper_attribution(self):
        self.meter.replace_limits(BudgetLimit(daily=DailyLimits(per_customer=0.01)))
        wrapper = MeteredOpenAI(
            self.meter, model="gpt-4", attribution=Attribution(customer_id="c1"), client=self.client
        )
        wrapper.chat([{"role": "user", "content": "Hello"}])

        # 0.006 spent, another 0.006 would reach 0.01
        with pytest.raises(BudgetExceededError, match="Customer daily budget"):
            wrapper.chat([{"role": "user", "content": "Hello"}], estimated_cost=0.006)

    def test_chat_openai_failure_no_event_recorded(self):
        """Test OpenAI API failure does not record event."""
        self.client.chat.completions.create.side_effect = Exception("API Error")
        wrapper = MeteredOpenAI(self.meter, model="gpt-4", client=self.client)

        with pytest.raises(Exception, match="API Error"):
            wrapper.chat(messages=[{"role": "user", "content": "Hello"}])

        assert self.recorded() == []

    def test_missing_usage_raises_error(self):
        response = make_response()
        response.usage = None
        self.client.chat.completions.create.return_value = response
        wrapper = MeteredOpenAI(self.meter, model="gpt-4", client=self.client)

        with pytest.raises(ValueError, match="missing usage information"):
            wrapper.chat(messages=[{"role": "user", "content": "Hello"}])

    def test_recording_failure_raises_error(self):
        """Test ledger failure raises error without swallowing."""
        wrapper = MeteredOpenAI(self.meter, model="gpt-4", client=self.client)

        with patch.object(self.meter.ledger, "append", side_effect=StorageUnavailableError("disk full")):
            with pytest.raises(StorageUnavailableError, match="disk full"):
                wrapper.chat(messages=[{"role": "user", "content": "Hello"}])
