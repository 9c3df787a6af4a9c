# Minimal example of a writing session against a local JSON store
import asyncio
import logging

from draftsync import (
    JSONGateway,
    ScriptedAssistant,
    Settings,
    StoreEventType,
    TextTranscriptView,
    WritingSession,
)

logging.basicConfig(level=logging.INFO)


async def main():
    view = TextTranscriptView()
    assistant = ScriptedAssistant(responder=lambda prompt: f"You asked: {prompt}")
    session = WritingSession(
        JSONGateway("./draftsync_project"),
        assistant,
        view=view,
        settings=Settings(autosave_debounce_ms=200, autosave_min_interval_ms=1000),
    )

    session.subscribe(StoreEventType.AUTOSAVE_SAVED, lambda event: print(f"Saved ({event.payload.reason})"))

    async with session:
        await session.send_message("How should I start my essay?")
        session.update_phase("write", "<p>Once upon a time...</p>")
        await asyncio.sleep(0.5)

        print(view.output())
        print(f"Words in draft: {session.get_state().phase('write').word_count}")


if __name__ == "__main__":
    asyncio.run(main())
