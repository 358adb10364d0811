"""Minimal demonstration of a streaming conversation with automatic continuation."""

import sys

from nai_chat import create_conversation
from nai_chat.infrastructure.logging.logger import setup_logger
from nai_chat.config.settings import load_settings


def print_token(text: str, done: bool) -> None:
    if done:
        print()
        return
    sys.stdout.write(text)
    sys.stdout.flush()


if __name__ == "__main__":
    cfg = load_settings()
    setup_logger(cfg)
    conv = create_conversation("You are a helpful assistant.", cfg)
    question = "用三句话介绍一下 Server-Sent Events。"
    print("User:", question)
    print("Assistant: ", end="")
    result = conv.send_streaming_until_done(question, print_token)
    print(f"[stop_reason={result.stop_reason} input={result.input_tokens} output~{result.output_tokens}]")
