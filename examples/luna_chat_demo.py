"""Minimal console demonstration of the chat orchestrator."""

from luna_core import create_orchestrator

if __name__ == "__main__":
    chat = create_orchestrator()
    question = "Explain what a Python generator is in two sentences."
    chat.send_message(question)
    print("User:", question)
    print("Luna:", chat.messages[-1].text)
