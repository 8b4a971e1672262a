import asyncio
import logging
import sys

from llama_copilot import CancellationToken, ChatMessage, LlamaChatProvider, RuleCatalog, Settings
from llama_copilot.types import TextPart


async def main(settings_path: str, prompt: str) -> None:
    settings = Settings.from_file(settings_path)
    rules = RuleCatalog.from_directory(settings.rules_directory) if settings.enable_project_rules else None
    provider = LlamaChatProvider(settings, rules=rules)

    try:
        models = await provider.provide_model_information()
        for model in models:
            print(f"{model.id}: ctx={model.max_input_tokens} out={model.max_output_tokens}")
        if not models:
            print("No models found")
            return

        def progress(part) -> None:
            if isinstance(part, TextPart):
                print(part.value, end="", flush=True)
            else:
                print(f"\n[tool call] {part.name}({part.input})")

        try:
            await provider.provide_chat_response(
                models[0].id, [ChatMessage.user(prompt)], progress, token=CancellationToken()
            )
        except Exception as e:
            print("\nRequest failed:", type(e).__name__)
        print()
    finally:
        await provider.aclose()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    if len(sys.argv) < 2:
        print("usage: smoke.py SETTINGS.yaml [PROMPT]")
        sys.exit(2)
    asyncio.run(main(sys.argv[1], sys.argv[2] if len(sys.argv) > 2 else "Say hello."))
