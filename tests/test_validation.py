import asyncio
import unittest

from chatmux.errors import (
    ProviderConfigError,
    ProviderValidationError,
    RequestValidationError,
    TimeoutConfigError,
    ToolTransformError,
)
from chatmux.providers import GeminiProvider, MistralProvider, OpenAICompatibleProvider, OpenRouterProvider
from chatmux.providers.base import initialize, validate_messages, validate_options
from chatmux.types import ChatCompletionOptions, ChatMessage, FunctionCall, NamedFunction, NamedToolChoice, ToolCall

from stubs import config, provider_kwargs, scripted, sse


class ValidateMessagesTests(unittest.TestCase):
    def assert_rejected(self, messages, index, field) -> None:
        with self.assertRaises(RequestValidationError) as ctx:
            validate_messages(messages)
        self.assertEqual(ctx.exception.index, index)
        self.assertEqual(ctx.exception.field, field)
        self.assertEqual(ctx.exception.code, "VALIDATION_ERROR")

    def test_accepts_mappings_and_models(self) -> None:
        call = ToolCall(index=3, id="call_1", function=FunctionCall(name="lookup", arguments='{"q": 1}'))
        messages = [
            {"role": "system", "content": "be brief"},
            ChatMessage(role="user", content="hi"),
            ChatMessage(role="assistant", tool_calls=[call]),
            {"role": "tool", "tool_call_id": "call_1", "name": "lookup", "content": "42"},
        ]
        normalized = validate_messages(messages)
        self.assertEqual(normalized[1], {"role": "user", "content": "hi"})
        self.assertEqual(
            normalized[2]["tool_calls"],
            [{"id": "call_1", "type": "function", "function": {"name": "lookup", "arguments": '{"q": 1}'}}],
        )
        self.assertNotIn("content", normalized[2])

    def test_empty_and_non_list(self) -> None:
        for messages in ([], "hello", None):
            with self.subTest(messages=messages):
                with self.assertRaises(RequestValidationError):
                    validate_messages(messages)

    def test_missing_role_names_index(self) -> None:
        messages = [{"role": "user", "content": "a"}, {"role": "assistant", "content": "b"}, {"content": "c"}]
        self.assert_rejected(messages, 2, "role")

    def test_invalid_entries(self) -> None:
        self.assert_rejected(["nope"], 0, None)
        self.assert_rejected([{"role": "  ", "content": "x"}], 0, "role")
        self.assert_rejected([{"role": "narrator", "content": "x"}], 0, "role")

    def test_tool_message_requires_id_name_and_content(self) -> None:
        self.assert_rejected([{"role": "tool", "name": "lookup", "content": "42"}], 0, "tool_call_id")
        self.assert_rejected([{"role": "tool", "tool_call_id": "c", "content": "42"}], 0, "name")
        self.assert_rejected([{"role": "tool", "tool_call_id": "c", "name": "lookup"}], 0, "content")

    def test_assistant_needs_content_or_tool_calls(self) -> None:
        self.assert_rejected([{"role": "assistant", "tool_calls": "call"}], 0, "tool_calls")
        self.assert_rejected([{"role": "assistant", "tool_calls": []}], 0, "content")
        self.assert_rejected([{"role": "user"}, {"role": "assistant"}], 0, "content")


class ValidateOptionsTests(unittest.TestCase):
    def test_accepts_model_and_mapping(self) -> None:
        choice = NamedToolChoice(function=NamedFunction(name="lookup"))
        options = validate_options(ChatCompletionOptions(model="gpt-4", tool_choice=choice, timeout=500))
        self.assertEqual(options.model, "gpt-4")
        self.assertEqual(options.timeout, 500)

        options = validate_options({"model": "gpt-4", "tools": ({"name": "x"},), "tool_choice": "auto"})
        self.assertEqual(options.tools, [{"name": "x"}])

    def test_rejections(self) -> None:
        cases = [
            ({"model": ""}, "model"),
            ({"model": 3}, "model"),
            ({"model": "m", "tools": {"name": "x"}}, "tools"),
            ({"model": "m", "tool_choice": "required"}, "tool_choice"),
            ({"model": "m", "tool_choice": {"type": "function"}}, "tool_choice"),
        ]
        for options, field in cases:
            with self.subTest(options=options):
                with self.assertRaises(RequestValidationError) as ctx:
                    validate_options(options)
                self.assertEqual(ctx.exception.field, field)

    def test_non_mapping_options(self) -> None:
        with self.assertRaises(RequestValidationError):
            validate_options(["gpt-4"])


class InitializeTests(unittest.TestCase):
    def test_missing_credentials_is_config_error(self) -> None:
        with self.assertRaises(ProviderConfigError) as ctx:
            initialize("openai", config(), get_secret=lambda key: None)
        self.assertEqual(ctx.exception.code, "CONFIG_ERROR")
        self.assertIn("openai", str(ctx.exception))

    def test_secret_resolver_fills_in_key(self) -> None:
        handle = initialize("openai", {"api_key_env": "CHATMUX_TEST_API_KEY"}, get_secret=lambda key: "sk-1")
        self.assertEqual(handle.api_key, "sk-1")
        self.assertEqual(len(handle.tracker), 0)


ADAPTERS = {
    "openai": OpenAICompatibleProvider,
    "openrouter": OpenRouterProvider,
    "mistral": MistralProvider,
    "gemini": GeminiProvider,
}


class NoNetworkOnBadInputTests(unittest.TestCase):
    """Every adapter rejects bad input before the backend sees a request."""

    def run_adapter(self, name, messages, options):
        transport, seen = scripted(sse("[DONE]"))

        async def scenario():
            provider = ADAPTERS[name](name, config(), **provider_kwargs(transport))
            try:
                await provider.get_chat_completion(messages, options)
            finally:
                await provider.aclose()
                self.assertEqual(len(provider.tracker), 0)

        return scenario, seen

    def test_missing_role(self) -> None:
        for name in ADAPTERS:
            with self.subTest(provider=name):
                scenario, seen = self.run_adapter(name, [{"role": "user", "content": "a"}, {"content": "b"}], {"model": "m"})
                with self.assertRaises(ProviderValidationError) as ctx:
                    asyncio.run(scenario())
                self.assertEqual(ctx.exception.index, 1)
                self.assertIn("index 1", str(ctx.exception))
                self.assertTrue(str(ctx.exception).startswith(f"{name}: Invalid input"))
                self.assertEqual(seen, [])

    def test_bad_timeout(self) -> None:
        for name in ADAPTERS:
            with self.subTest(provider=name):
                scenario, seen = self.run_adapter(name, [{"role": "user", "content": "a"}], {"model": "m", "timeout": 10**9})
                with self.assertRaises(TimeoutConfigError) as ctx:
                    asyncio.run(scenario())
                self.assertEqual(ctx.exception.reason, "TIMEOUT_TOO_LONG")
                self.assertEqual(seen, [])

    def test_bad_tool(self) -> None:
        for name in ADAPTERS:
            with self.subTest(provider=name):
                options = {"model": "m", "tools": [{"description": "no name"}]}
                scenario, seen = self.run_adapter(name, [{"role": "user", "content": "a"}], options)
                with self.assertRaises(ToolTransformError) as ctx:
                    asyncio.run(scenario())
                self.assertEqual(ctx.exception.code, "TOOL_TRANSFORM_ERROR")
                self.assertEqual(seen, [])


if __name__ == "__main__":
    unittest.main()
