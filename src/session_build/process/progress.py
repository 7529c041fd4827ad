"""Console progress shared by all workers of a build."""

from __future__ import annotations

import threading

import rich_click as click

from session_build.process.models import ProgressKind, ProgressMessage


class Progress:
    """Local progress output with a stop flag.

    Subclasses decide where messages go; the build process routes every message through
    ``output`` so that it is also recorded in the build store for other workers.
    """

    def __init__(self, *, verbose: bool = False) -> None:
        self.verbose = verbose
        self._stopped = threading.Event()

    def output(self, message: ProgressMessage) -> None:
        if message.verbose and not self.verbose:
            return
        self.do_output(message)

    def do_output(self, message: ProgressMessage) -> None:
        raise NotImplementedError

    def echo(self, text: str, *, verbose: bool = False) -> None:
        self.output(ProgressMessage(kind=ProgressKind.WRITELN, text=text, verbose=verbose))

    def echo_warning(self, text: str) -> None:
        self.output(ProgressMessage(kind=ProgressKind.WARNING, text=text))

    def echo_error(self, text: str) -> None:
        self.output(ProgressMessage(kind=ProgressKind.ERROR_MESSAGE, text=text))

    def stop(self) -> None:
        self._stopped.set()

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()


class ConsoleProgress(Progress):
    def do_output(self, message: ProgressMessage) -> None:
        match message.kind:
            case ProgressKind.WRITELN:
                click.echo(message.text)
            case ProgressKind.WARNING:
                click.secho(f"### {message.text}", fg="yellow", err=True)
            case ProgressKind.ERROR_MESSAGE:
                click.secho(f"*** {message.text}", fg="red", err=True)


class RecordingProgress(Progress):
    """Keeps messages in memory; used by embedding code and tests."""

    def __init__(self, *, verbose: bool = False) -> None:
        super().__init__(verbose=verbose)
        self.messages: list[ProgressMessage] = []

    def do_output(self, message: ProgressMessage) -> None:
        self.messages.append(message)

    @property
    def lines(self) -> list[str]:
        return [message.text for message in self.messages]
