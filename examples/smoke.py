import asyncio
import logging

from chatmux.client import available_models, build_client
from chatmux.errors import ChatmuxError


async def main() -> None:
    logging.basicConfig(level=logging.INFO)

    configs = {
        "openai": {"api_key_env": "OPENAI_API_KEY"},
        "mistral": {"api_key_env": "MISTRAL_API_KEY"},
        "gemini": {"api_key_env": "GEMINI_API_KEY", "enabled": False},
    }
    async with build_client(configs, get_secret=lambda key: "DUMMY") as client:
        print("Models:", available_models(client.providers))

        # Validation happens before any request is sent
        try:
            await client.get_chat_completion("mistral", [{"content": "hi"}], {"model": "mistral-small-latest"})
        except ChatmuxError as e:
            print("Expected error:", type(e).__name__, e)


if __name__ == "__main__":
    asyncio.run(main())
