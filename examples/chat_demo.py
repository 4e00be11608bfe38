"""Minimal terminal demo: stream replies from the completion service."""

import asyncio

from chat_core.api import service


async def main() -> None:
    session = service.get_default_session()
    printed = {"message_id": None, "length": 0}

    def on_event(event):
        if event.kind != "message_grown":
            return
        conv = session.store.get(event.conversation_id)
        msg = conv.find_message(event.message_id) if conv else None
        if msg is None:
            return
        if printed["message_id"] != msg.id:
            printed.update(message_id=msg.id, length=0)
        print(msg.content[printed["length"]:], end="", flush=True)
        printed["length"] = len(msg.content)

    session.store.subscribe(on_event)
    print(f"Model: {session.model} (empty line to quit)")
    while True:
        text = await asyncio.to_thread(input, "You: ")
        if not text.strip():
            break
        print("AI: ", end="", flush=True)
        result = await service.send_message(text)
        if result.get("state") == "failed":
            print(result["assistant_message"]["content"], end="")
        print()
    service.close_default_session()


if __name__ == "__main__":
    asyncio.run(main())
