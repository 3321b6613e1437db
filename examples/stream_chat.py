#!/usr/bin/env python3
"""
Example: Streaming chat completion in-process

Downloads the model on first use, loads it with MLX and prints the reply as
it is generated. Requires Apple Silicon with mlx-lm installed.

    python examples/stream_chat.py yi-coder "Write a function that reverses a string"
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "python"))

from dispatcher import ChatDispatcher  # noqa: E402
from server_state import ServerState  # noqa: E402


async def main(model_id: str, prompt: str) -> None:
    state = ServerState.from_config()
    dispatcher = ChatDispatcher(state)
    try:
        stream = await dispatcher.complete_params(
            {
                "model": model_id,
                "messages": [
                    {"role": "system", "content": "You are a concise coding assistant."},
                    {"role": "user", "content": prompt},
                ],
                "max_tokens": 256,
                "stream": True,
            }
        )
        async for chunk in stream:
            print(chunk.text, end="", flush=True)
            if chunk.finished:
                print(f"\n\n[finish_reason={chunk.finish_reason}]")
    finally:
        await dispatcher.shutdown()
        state.close()


if __name__ == "__main__":
    model = sys.argv[1] if len(sys.argv) > 1 else "yi-coder"
    text = sys.argv[2] if len(sys.argv) > 2 else "Write hello world in Python."
    asyncio.run(main(model, text))
