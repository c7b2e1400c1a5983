from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Callable, Dict, Optional

import typer
import uvicorn

from agent.agent import GeminiGateway
from agent.chat import ChatService
from agent.core.exceptions import ConfigurationError, GatewayError
from agent.core.memory import SessionRegistry, utcnow
from app.main import configure_logging
from config.settings import Settings, get_settings


logger = logging.getLogger(__name__)

app = typer.Typer(help="Chat session API server and terminal chat.")

EXIT_WORDS = {"exit", "quit", "bye", "goodbye"}

COMMANDS: Dict[str, str] = {
    "/help": "Show available commands",
    "/history": "Show conversation history",
    "/clear": "Clear conversation history",
    "/save": "Save conversation to file",
    "/model": "Show current model info",
    "/session": "Show session info",
}

ERROR_REPLY = "Sorry, I encountered an error processing your message. Please try again."


def _read_line() -> str:
    return typer.prompt("\nYou", default="", show_default=False)


class TerminalChat:
    """Interactive chat on a single session, driven line by line."""

    def __init__(
        self,
        service: ChatService,
        settings: Settings,
        *,
        session_id: Optional[str] = None,
        save_dir: Path = Path("."),
        read: Callable[[], str] = _read_line,
        echo: Callable[[str], None] = typer.echo,
    ) -> None:
        self.service = service
        self.settings = settings
        self.save_dir = Path(save_dir)
        self.read = read
        self.echo = echo
        self.session_id = service.create_session(session_id).id
        self.closed = False

    def handle_command(self, line: str) -> bool:
        cmd = line.split(" ", 1)[0].lower()
        if cmd == "/help":
            self.show_help()
        elif cmd == "/history":
            self.show_history()
        elif cmd == "/clear":
            self.service.clear_session(self.session_id)
            self.echo("Conversation history cleared!")
        elif cmd == "/save":
            self.save_conversation()
        elif cmd == "/model":
            self.show_model()
        elif cmd == "/session":
            self.show_session()
        else:
            return False
        return True

    def show_help(self) -> None:
        self.echo("\nAvailable commands:")
        for cmd, desc in COMMANDS.items():
            self.echo(f"  {cmd} - {desc}")

    def show_history(self) -> None:
        session = self.service.history(self.session_id)
        if not session.history:
            self.echo("No conversation yet.")
            return
        self.echo("\nConversation history:")
        self.echo("=" * 50)
        for index, exchange in enumerate(session.history, start=1):
            self.echo(f"\n[{exchange.created_at:%H:%M:%S}] Exchange {index}:")
            self.echo(f"User: {exchange.user_input}")
            self.echo(f"Assistant: {exchange.assistant_output}")

    def show_model(self) -> None:
        self.echo(f"\nCurrent model: {self.settings.gemini_model}")
        self.echo(f"System instruction: {self.settings.system_instruction}")
        self.echo(f"Session ID: {self.session_id}")

    def show_session(self) -> None:
        session = self.service.history(self.session_id)
        self.echo("\nSession info:")
        self.echo(f"  Session ID: {session.id}")
        self.echo(f"  Messages: {session.message_count}")
        self.echo(f"  Started: {session.created_at.isoformat()}")
        self.echo(f"  Last activity: {session.last_activity_at.isoformat()}")

    def save_conversation(self) -> Optional[Path]:
        session = self.service.history(self.session_id)
        if not session.history:
            self.echo("No conversation to save.")
            return None

        now = utcnow()
        path = self.save_dir / f"chat-history-{now:%Y-%m-%dT%H-%M-%S-%f}.json"
        data = {
            "sessionId": session.id,
            "timestamp": now.isoformat(),
            "model": self.settings.gemini_model,
            "totalExchanges": session.message_count,
            "conversation": [exchange.to_dict() for exchange in session.history],
        }
        try:
            path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        except OSError as exc:
            self.echo(f"Error saving conversation: {exc}")
            return None
        self.echo(f"Conversation saved to: {path}")
        return path

    def handle_message(self, text: str) -> str:
        try:
            return self.service.send_message(self.session_id, text).response
        except GatewayError as exc:
            logger.warning("Message failed: %s", exc)
            return ERROR_REPLY

    def run(self) -> None:
        self.echo("Hello! I'm your AI assistant. How can I help you today?")
        self.echo("Type '/help' for commands, or 'exit' to leave.")
        while not self.closed:
            try:
                line = self.read()
            except (typer.Abort, EOFError):
                self.echo("\nGoodbye! Chat session terminated.")
                self.closed = True
                break

            stripped = line.strip()
            if stripped.lower() in EXIT_WORDS:
                self.echo("Goodbye! Thanks for chatting with me!")
                self.close()
                break

            if stripped.startswith("/"):
                if not self.handle_command(stripped):
                    self.echo("Unknown command. Type '/help' for available commands.")
                continue

            if not stripped:
                self.echo("Please enter a message or command to continue...")
                continue

            self.echo(f"\nAssistant: {self.handle_message(line)}")

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True

        count = self.service.history(self.session_id).message_count
        self.echo(f"\nChat session ended. Total exchanges: {count}")
        if count:
            self.echo("Would you like to see the conversation history? (y/n)")
            try:
                answer = self.read()
            except (typer.Abort, EOFError):
                return
            if answer.strip().lower().startswith("y"):
                self.show_history()


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind address (defaults to HOST)."),
    port: Optional[int] = typer.Option(None, help="Port (defaults to PORT)."),
) -> None:
    """Run the HTTP API."""
    settings = get_settings()
    configure_logging(settings.log_level)
    if not settings.gemini_api_key:
        typer.echo("GEMINI_API_KEY environment variable is not set", err=True)
        raise typer.Exit(code=1)

    uvicorn.run(
        "app.main:create_app",
        factory=True,
        host=host or settings.host,
        port=port or settings.port,
        log_level=settings.log_level.lower(),
    )


@app.command()
def chat(
    session_id: Optional[str] = typer.Option(None, "--session-id", help="Session id to use."),
    save_dir: Path = typer.Option(Path("."), help="Directory for /save output."),
) -> None:
    """Chat with the assistant in the terminal."""
    settings = get_settings()
    configure_logging("WARNING")
    try:
        gateway = GeminiGateway.from_settings(settings)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}", err=True)
        typer.echo("Please set your API key in the .env file: GEMINI_API_KEY=your-api-key-here")
        raise typer.Exit(code=1)

    typer.echo(f"Using model: {settings.gemini_model}")
    service = ChatService(
        SessionRegistry(provider_state_factory=gateway.new_state),
        gateway,
        timeout=settings.gateway_timeout_seconds,
    )
    try:
        TerminalChat(service, settings, session_id=session_id, save_dir=save_dir).run()
    finally:
        service.close()


if __name__ == "__main__":
    app()
