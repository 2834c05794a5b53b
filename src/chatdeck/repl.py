from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass
from typing import Awaitable

from common.events import (
    AssistantDeltaEvent,
    AssistantMessageEvent,
    ErrorEvent,
    Event,
    MetadataEvent,
)
from chatdeck.app import ChatApp
from chatdeck.builtins import BuiltinCommands
from chatdeck.streaming import TurnOutcome


@dataclass(frozen=True)
class RouteResult:
    kind: str
    name: str | None
    args: str


class InputRouter:
    def __init__(self, builtins: BuiltinCommands):
        self.builtins = builtins

    def route(self, user_input: str) -> RouteResult:
        if not user_input.startswith("/"):
            return RouteResult(kind="prompt", name=None, args=user_input)

        parts = user_input.split(maxsplit=1)
        cmd = parts[0].lstrip("/")
        args = parts[1] if len(parts) > 1 else ""

        if self.builtins.has_command(cmd):
            return RouteResult(kind="builtin", name=cmd, args=args)
        return RouteResult(kind="unknown", name=cmd, args=args)


def print_event(event: Event) -> None:
    if isinstance(event, AssistantDeltaEvent):
        print(event.text, end="", flush=True)
    elif isinstance(event, AssistantMessageEvent):
        print()
    elif isinstance(event, ErrorEvent):
        print(f"\n❌ {event.message}")
    elif isinstance(event, MetadataEvent) and event.success:
        print(f"\n🏷️  Generated {event.kind}")


class ChatREPL:
    def __init__(self, app: ChatApp):
        self.app = app
        self.builtins = BuiltinCommands(self)
        self.router = InputRouter(self.builtins)

    async def run_turn(self, turn: Awaitable[TurnOutcome]) -> TurnOutcome:
        loop = asyncio.get_running_loop()
        installed = False
        try:
            loop.add_signal_handler(signal.SIGINT, self.app.orchestrator.stop)
            installed = True
        except (NotImplementedError, RuntimeError):
            pass
        try:
            outcome = await turn
        finally:
            if installed:
                loop.remove_signal_handler(signal.SIGINT)
        if outcome.status == "cancelled":
            print("\n⚠️  Stopped")
        return outcome

    async def send(self, text: str) -> None:
        session = self.app.store.current_session
        if session is None:
            session = self.app.store.add_session()
        if not session.model:
            print("❌ No model configured. Use /models then /model <name>")
            return
        await self.run_turn(self.app.orchestrator.send(session.id, text))

    async def run(self, initial_message: str | None = None) -> None:
        session = self.app.store.current_session
        model = session.model if session else ""
        print(f"🤖 chatdeck started (model: {model or 'none'})")
        print("Commands: /help for all commands, Ctrl-C stops a response")
        print()

        if initial_message:
            await self.send(initial_message)

        while True:
            try:
                user_input = (await asyncio.to_thread(input, "\n> ")).strip()

                if not user_input:
                    continue

                route = self.router.route(user_input)
                if route.kind == "builtin":
                    if not await self.builtins.handle(route.name, route.args):
                        break
                    continue
                if route.kind == "unknown":
                    print(f"Unknown command: /{route.name}. Type /help for available commands.")
                    continue

                await self.send(route.args)

            except KeyboardInterrupt:
                print("\n\n⚠️  Interrupted")
                break
            except EOFError:
                break

        await self.app.shutdown()
