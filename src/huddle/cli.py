"""CLI for running and inspecting a huddle server.

Settings come from an optional YAML file (``--config`` or HUDDLE_CONFIG)
plus HUDDLE_* environment variables; see huddle.config.

The history, search and register commands work directly on the SQLite
database, so they can be used while the server is stopped.
"""

from __future__ import annotations

import json
import logging
import sys

import cyclopts
import yaml

from . import db
from .config import ConfigError, ServerSettings, set_settings
from .errors import ChatError

app = cyclopts.App(
    name="huddle",
    help="Room-based real-time chat server",
)


def _load_settings(config_path: str | None) -> ServerSettings:
    try:
        return ServerSettings.load(config_path)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)


def _open_db(config_path: str | None, db_path: str | None) -> ServerSettings:
    settings = _load_settings(config_path)
    if db_path:
        settings.db_path = db_path
    db.configure(settings.db_path)
    db.init_db()
    return settings


def _print_messages(messages: list[dict], json_output: bool) -> None:
    if json_output:
        for msg in messages:
            print(json.dumps(msg))
        return

    if not messages:
        print("No messages")
        return

    for msg in messages:
        created = msg["timestamp"][:19]
        body = msg["message"] or ("[file]" if msg["file"] else "[media]")
        edited = " (edited)" if msg["edited"] else ""
        print(f"[{created}] {msg['sender']}: {body}{edited}")


# --- Server Command ---


@app.command
def serve(
    *,
    host: str = "0.0.0.0",
    port: int = 8000,
    no_auth: bool = False,
    config: str | None = None,
    log_level: str = "info",
):
    """Run the chat server.

    Args:
        host: Interface to bind
        port: Port to listen on
        no_auth: Skip bearer-token checks (development only!)
        config: YAML settings file
        log_level: Logging level (debug, info, warning, error)
    """
    import uvicorn

    from .api import app as api_app
    from .api import configure_cors

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings = _load_settings(config)
    if no_auth:
        settings.no_auth = True
    if settings.no_auth:
        print("WARNING: Running in no-auth mode. Anyone can read and post as anyone.")
        print("         Do not use in production.\n")
    if settings.db_path == ":memory:":
        print("Note: using an in-memory database; messages are lost on exit.\n")

    set_settings(settings)
    configure_cors(api_app, settings.cors_origins)

    uvicorn.run(api_app, host=host, port=port, log_level=log_level.lower())


# --- Admin Commands ---


@app.command(name="init-db")
def init_db(*, db_path: str | None = None, config: str | None = None):
    """Create or migrate the database schema.

    Args:
        db_path: SQLite file (overrides settings)
        config: YAML settings file
    """
    settings = _open_db(config, db_path)
    print(f"Database ready at {settings.db_path} (schema version {db.get_schema_version()})")


@app.command(name="config")
def show_config(*, config: str | None = None, write: str | None = None):
    """Show the resolved settings, or write them to a YAML file.

    Args:
        config: YAML settings file to start from
        write: Save the resolved settings to this path
    """
    settings = _load_settings(config)
    if write:
        settings.save(write)
        print(f"Settings written to {write}")
        return
    print(yaml.safe_dump(settings.to_dict(), default_flow_style=False, sort_keys=False), end="")


@app.command
def history(
    room: str,
    *,
    limit: int = 20,
    before: str | None = None,
    db_path: str | None = None,
    config: str | None = None,
    json_output: bool = False,
):
    """Print the most recent public messages in a room.

    Args:
        room: Room name
        limit: Number of messages
        before: Only messages older than this timestamp
        db_path: SQLite file (overrides settings)
        config: YAML settings file
        json_output: One JSON object per line
    """
    _open_db(config, db_path)
    try:
        messages, has_more = db.list_room_messages(room, before=before, limit=limit)
    except ValueError:
        print(f"Error: invalid timestamp for --before: {before!r}", file=sys.stderr)
        raise SystemExit(1)

    _print_messages(messages, json_output)
    if has_more and not json_output:
        print(f"... older messages exist (use --before {messages[0]['timestamp']})")


@app.command
def search(
    room: str,
    query: str,
    *,
    limit: int = 50,
    db_path: str | None = None,
    config: str | None = None,
    json_output: bool = False,
):
    """Search a room's public messages (case-insensitive substring).

    Args:
        room: Room name
        query: Text to look for
        limit: Maximum results
        db_path: SQLite file (overrides settings)
        config: YAML settings file
        json_output: One JSON object per line
    """
    _open_db(config, db_path)
    _print_messages(db.search_messages(room, query, limit=limit), json_output)


@app.command
def register(
    email: str,
    password: str,
    *,
    name: str | None = None,
    avatar: str | None = None,
    db_path: str | None = None,
    config: str | None = None,
):
    """Create a user account and print a session token.

    Args:
        email: Login email
        password: At least 8 characters with upper, lower, digit and symbol
        name: Display name (defaults to the email)
        avatar: Avatar URL
        db_path: SQLite file (overrides settings)
        config: YAML settings file
    """
    from .auth_provider import register_user

    settings = _open_db(config, db_path)
    try:
        user, token = register_user(
            email, password, avatar=avatar, name=name, ttl_hours=settings.session_ttl_hours
        )
    except ChatError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        raise SystemExit(1)

    print(f"Created user {user['name']} <{user['email']}> ({user['id']})")
    print(f"Token: {token}")


if __name__ == "__main__":
    app()
