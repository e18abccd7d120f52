import io
import json
import unittest

from discovery.db.schemas import ChatMessage
from discovery.services.llm_service import BedrockChatService
from tests.unit.fakes import make_settings


class FakeBedrockClient:
    def __init__(self, response):
        self.response = response
        self.calls = []

    def invoke_model(self, **kwargs):
        self.calls.append(kwargs)
        return {"body": io.BytesIO(json.dumps(self.response).encode("utf-8"))}


class TestBedrockChatService(unittest.IsolatedAsyncioTestCase):
    async def test_system_prompt_is_lifted_and_usage_returned(self):
        client = FakeBedrockClient({
            "content": [{"type": "text", "text": '{"themes": '}, {"type": "text", "text": "[]}"}],
            "usage": {"input_tokens": 321, "output_tokens": 45},
        })
        service = BedrockChatService(make_settings(THEME_MODEL_ID=" anthropic.test-model "), client=client)

        completion = await service.complete(
            [
                ChatMessage(role="system", content="You are an analyst."),
                ChatMessage(role="user", content="Analyze this."),
            ],
            temperature=0.5,
            max_tokens=2000,
        )

        self.assertEqual(completion.text, '{"themes": []}')
        self.assertEqual((completion.input_tokens, completion.output_tokens), (321, 45))

        call = client.calls[0]
        self.assertEqual(call["modelId"], "anthropic.test-model")
        payload = json.loads(call["body"])
        self.assertEqual(payload["anthropic_version"], "bedrock-2023-05-31")
        self.assertEqual(payload["system"], "You are an analyst.")
        self.assertEqual(payload["messages"], [{"role": "user", "content": "Analyze this."}])
        self.assertEqual((payload["temperature"], payload["max_tokens"]), (0.5, 2000))

    async def test_missing_usage_counts_as_zero(self):
        client = FakeBedrockClient({"content": []})
        service = BedrockChatService(make_settings(), client=client)

        completion = await service.complete([ChatMessage(role="user", content="hi")], model="other-model")

        self.assertEqual(completion.text, "")
        self.assertEqual(completion.input_tokens, 0)
        self.assertEqual(client.calls[0]["modelId"], "other-model")
        self.assertNotIn("system", json.loads(client.calls[0]["body"]))


if __name__ == "__main__":
    unittest.main()
