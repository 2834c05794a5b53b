from __future__ import annotations

import inspect
from pathlib import Path

from chatdeck.errors import ValidationError
from chatdeck.metadata import MetadataKind
from chatdeck.models import OPTION_KEYS, ChatSession
from chatdeck.search import search, toggle_type_filter
from chatdeck.sessions.persistence import export_sessions, read_import_file


def parse_option_value(key: str, raw: str):
    if key not in OPTION_KEYS:
        raise ValueError(f"Unknown option {key!r}. Options: {', '.join(OPTION_KEYS)}")
    raw = raw.strip()
    if not raw:
        raise ValueError(f"Missing value for {key}")
    if key == "stop":
        return [part.strip() for part in raw.split(",") if part.strip()]
    if key == "stream":
        lowered = raw.lower()
        if lowered in {"on", "true", "yes", "1"}:
            return True
        if lowered in {"off", "false", "no", "0"}:
            return False
        raise ValueError("stream must be on or off")
    if key == "top_k":
        return int(raw)
    return float(raw)


TYPE_FLAGS = {"--bookmarked": "bookmarked", "--favorite": "favorite"}


def apply_type_flags(args: str) -> str:
    """Turn `--bookmarked` / `--favorite` words into a `type:` filter on the query."""
    words: list[str] = []
    kind = None
    for word in args.split(" "):
        if word in TYPE_FLAGS:
            kind = TYPE_FLAGS[word]
        else:
            words.append(word)
    query = " ".join(words).strip()
    if kind is not None:
        query = toggle_type_filter(query, kind, True)
    return query


def format_session_line(position: int, session: ChatSession, current_id: str | None) -> str:
    marker = "*" if session.id == current_id else " "
    flags = ("🔖" if session.is_bookmarked else "") + ("⭐" if session.is_favorite else "")
    tags = f" [{', '.join(session.tags)}]" if session.tags else ""
    return f"{marker}{position:>3}. {session.name}{tags} {flags}".rstrip() + f"  ({session.id[:8]})"


class BuiltinCommands:
    def __init__(self, repl):
        self.repl = repl
        self.app = repl.app
        self._handlers = {
            "quit": self.cmd_quit,
            "exit": self.cmd_quit,
            "help": self.cmd_help,
            "new": self.cmd_new,
            "sessions": self.cmd_sessions,
            "switch": self.cmd_switch,
            "delete": self.cmd_delete,
            "rename": self.cmd_rename,
            "tags": self.cmd_tags,
            "notes": self.cmd_notes,
            "bookmark": self.cmd_bookmark,
            "favorite": self.cmd_favorite,
            "search": self.cmd_search,
            "model": self.cmd_model,
            "models": self.cmd_models,
            "system": self.cmd_system,
            "set": self.cmd_set,
            "reset": self.cmd_reset,
            "history": self.cmd_history,
            "edit": self.cmd_edit,
            "rm": self.cmd_rm,
            "regen": self.cmd_regen,
            "generate": self.cmd_generate,
            "export": self.cmd_export,
            "import": self.cmd_import,
        }

    @property
    def store(self):
        return self.app.store

    def list_commands(self) -> list[str]:
        return sorted(self._handlers.keys())

    def has_command(self, name: str) -> bool:
        return name in self._handlers

    async def handle(self, name: str, args: str) -> bool:
        handler = self._handlers.get(name)
        if not handler:
            return True
        result = handler(args)
        if inspect.isawaitable(result):
            result = await result
        return result

    def resolve(self, ref: str) -> ChatSession | None:
        ref = ref.strip()
        sessions = self.store.sessions
        if ref.isdigit():
            position = int(ref)
            if 1 <= position <= len(sessions):
                return sessions[position - 1]
        matches = [s for s in sessions if s.id.startswith(ref)] if ref else []
        return matches[0] if len(matches) == 1 else None

    def _current(self) -> ChatSession | None:
        session = self.store.current_session
        if session is None:
            print("No current session. Use /new")
        return session

    def cmd_quit(self, args: str) -> bool:
        print("👋 Goodbye!")
        return False

    def cmd_help(self, args: str) -> bool:
        print("\nCommands:")
        for name in self.list_commands():
            print(f"  /{name}")
        print("\nSearch operators: system: name: tag: note: in: type:bookmarked|favorite")
        print("  /search --bookmarked or --favorite adds the matching type: filter")
        print()
        return True

    def cmd_new(self, args: str) -> bool:
        session = self.store.add_session()
        if args.strip():
            self.store.rename_session(session.id, args)
        print(f"✅ New session {session.id[:8]} (model: {session.model or 'none'})")
        return True

    def cmd_sessions(self, args: str) -> bool:
        current = self.store.current_session_id
        for position, session in enumerate(self.store.sessions, start=1):
            print(format_session_line(position, session, current))
        return True

    def cmd_switch(self, args: str) -> bool:
        if not args.strip():
            print("Usage: /switch <number|id>")
            return True
        session = self.resolve(args)
        if session is None:
            print(f"❌ No session matches {args.strip()!r}")
            return True
        self.store.select_session(session.id)
        print(f"✅ Switched to {session.name}")
        return True

    def cmd_delete(self, args: str) -> bool:
        session = self.resolve(args) if args.strip() else self.store.current_session
        if session is None:
            print(f"❌ No session matches {args.strip()!r}")
            return True
        self.store.delete_session(session.id)
        print(f"🗑️  Deleted {session.name}")
        return True

    def cmd_rename(self, args: str) -> bool:
        session = self._current()
        if session is None:
            return True
        if not args.strip():
            print("Usage: /rename <name>")
            return True
        self.store.rename_session(session.id, args)
        print(f"✅ Renamed to {args.strip()}")
        return True

    def cmd_tags(self, args: str) -> bool:
        session = self._current()
        if session is None:
            return True
        if not args.strip():
            print(f"Tags: {', '.join(session.tags) or '(none)'}")
            return True
        tags = [] if args.strip() == "-" else [t.strip() for t in args.split(",")]
        self.store.set_tags(session.id, tags)
        print("✅ Tags updated")
        return True

    def cmd_notes(self, args: str) -> bool:
        session = self._current()
        if session is None:
            return True
        if not args.strip():
            print(f"Notes: {session.notes or '(none)'}")
            return True
        self.store.set_notes(session.id, "" if args.strip() == "-" else args.strip())
        print("✅ Notes updated")
        return True

    def cmd_bookmark(self, args: str) -> bool:
        session = self._current()
        if session is not None:
            self.store.toggle_bookmark(session.id)
            state = "on" if self.store.get_session(session.id).is_bookmarked else "off"
            print(f"🔖 Bookmark {state}")
        return True

    def cmd_favorite(self, args: str) -> bool:
        session = self._current()
        if session is not None:
            self.store.toggle_favorite(session.id)
            state = "on" if self.store.get_session(session.id).is_favorite else "off"
            print(f"⭐ Favorite {state}")
        return True

    def cmd_search(self, args: str) -> bool:
        sessions = self.store.sessions
        results = search(sessions, apply_type_flags(args))
        if not results:
            print("No matching sessions")
            return True
        current = self.store.current_session_id
        for session in results:
            print(format_session_line(sessions.index(session) + 1, session, current))
        return True

    def cmd_model(self, args: str) -> bool:
        session = self._current()
        if session is None:
            return True
        if not args.strip():
            print(f"Current model: {session.model or '(none)'}")
            return True
        model = args.strip()
        if self.app.registry.models and not self.app.registry.contains(model):
            print(f"⚠️  {model} is not in the available models list")
        self.store.update_model(session.id, model)
        print(f"✅ Switched to model: {model}")
        return True

    async def cmd_models(self, args: str) -> bool:
        models = await self.app.registry.refresh()
        if not models:
            print("No models available")
            return True
        current = self.store.current_session
        for name in models:
            marker = "*" if current is not None and current.model == name else " "
            print(f"{marker} {name}")
        return True

    def cmd_system(self, args: str) -> bool:
        session = self._current()
        if session is None:
            return True
        if not args.strip():
            print(f"System prompt: {session.system_prompt}")
            return True
        self.store.update_system_prompt(session.id, args.strip())
        print("✅ System prompt updated")
        return True

    def cmd_set(self, args: str) -> bool:
        session = self._current()
        if session is None:
            return True
        parts = args.split(maxsplit=1)
        if len(parts) != 2:
            current = session.options.overrides() if session.options else {}
            print(f"Options: {current or 'defaults'}")
            print("Usage: /set <option> <value>")
            return True
        key, raw = parts
        try:
            value = parse_option_value(key, raw)
        except ValueError as e:
            print(f"❌ {e}")
            return True
        self.store.update_options(session.id, {key: value})
        print(f"✅ {key} = {value}")
        return True

    def cmd_reset(self, args: str) -> bool:
        session = self._current()
        if session is None:
            return True
        key = args.strip()
        if key not in OPTION_KEYS:
            print(f"Usage: /reset <{'|'.join(OPTION_KEYS)}>")
            return True
        self.store.reset_option(session.id, key)
        print(f"✅ {key} reset to default")
        return True

    def cmd_history(self, args: str) -> bool:
        session = self._current()
        if session is None:
            return True
        if not session.messages:
            print("No messages yet")
        for index, message in enumerate(session.messages):
            print(f"[{index}] {message.role}: {message.content}")
        return True

    def cmd_edit(self, args: str) -> bool:
        session = self._current()
        if session is None:
            return True
        parts = args.split(maxsplit=1)
        if len(parts) != 2 or not parts[0].isdigit():
            print("Usage: /edit <index> <new content>")
            return True
        try:
            self.store.edit_message(session.id, int(parts[0]), parts[1])
        except IndexError as e:
            print(f"❌ {e}")
            return True
        print("✅ Message updated")
        return True

    def cmd_rm(self, args: str) -> bool:
        session = self._current()
        if session is None:
            return True
        if not args.strip().isdigit():
            print("Usage: /rm <index>")
            return True
        try:
            self.store.delete_message(session.id, int(args.strip()))
        except IndexError as e:
            print(f"❌ {e}")
            return True
        print("🗑️  Message deleted")
        return True

    async def cmd_regen(self, args: str) -> bool:
        session = self._current()
        if session is None:
            return True
        outcome = await self.repl.run_turn(self.app.orchestrator.regenerate(session.id))
        if outcome.status == "skipped":
            print("Nothing to regenerate")
        return True

    async def cmd_generate(self, args: str) -> bool:
        session = self._current()
        if session is None:
            return True
        which = args.strip().lower() or "all"
        if which == "all":
            results = await self.store.generate_metadata(session.id)
        else:
            try:
                kind = MetadataKind(which)
            except ValueError:
                print("Usage: /generate [name|tags|notes|all]")
                return True
            generate = {
                MetadataKind.NAME: self.store.generate_name,
                MetadataKind.TAGS: self.store.generate_tags,
                MetadataKind.NOTES: self.store.generate_notes,
            }[kind]
            results = {kind: await generate(session.id)}
        for kind, success in results.items():
            print(f"{'✅' if success else '⚠️ '} {kind.value}")
        return True

    def cmd_export(self, args: str) -> bool:
        directory = Path(args.strip() or ".").expanduser()
        path = export_sessions(self.store.export_all(), directory)
        print(f"✅ Exported {len(self.store.sessions)} session(s) to {path}")
        return True

    def cmd_import(self, args: str) -> bool:
        if not args.strip():
            print("Usage: /import <file>")
            return True
        try:
            records = read_import_file(Path(args.strip()).expanduser())
            sessions = self.store.import_all(records)
        except ValidationError as e:
            print(f"❌ Failed to import sessions: {e}")
            return True
        print(f"✅ Imported {len(sessions)} session(s)")
        return True
