"""claude-runner decode — replay a captured agent stdout through the decoder."""

from __future__ import annotations

from collections import Counter
from pathlib import Path
from typing import Any

import click

from claude_runner.events import DECODER_EVENTS
from claude_runner.protocol.decoder import StreamDecoder

#: Bytes fed to the decoder per call, small enough to split lines.
_CHUNK_SIZE = 4096


@click.command()
@click.argument("capture", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "-v",
    "--verbose",
    is_flag=True,
    help="Also print every decode error as it is found.",
)
def decode(capture: str, verbose: bool) -> None:
    """Decode CAPTURE (raw agent stdout, NDJSON) and summarise its events."""
    counts: Counter[str] = Counter()
    types: Counter[str] = Counter()
    decoder = StreamDecoder()

    def counter(event: str) -> Any:
        def _count(*args: Any) -> None:
            counts[event] += 1
            if event == "message":
                types[str(args[0].get("type", "?"))] += 1
            elif event == "error" and verbose:
                click.echo(f"  error: {args[0]}", err=True)

        return _count

    for event in DECODER_EVENTS:
        decoder.on(event, counter(event))

    try:
        with Path(capture).open("rb") as fh:
            while chunk := fh.read(_CHUNK_SIZE):
                decoder.feed(chunk)
    except OSError as exc:
        raise click.ClickException(f"Cannot read {capture}: {exc}") from exc
    decoder.finish()

    click.echo(f"Decoded {capture}")
    click.echo()
    click.echo("Events:")
    for event in DECODER_EVENTS:
        click.echo(f"  {event:<12} {counts[event]}")
    if types:
        click.echo()
        click.echo("Message types:")
        for name, count in sorted(types.items()):
            click.echo(f"  {name:<12} {count}")
    click.echo()
    click.echo(f"Token limit: {'yes' if decoder.token_limit_detected else 'no'}")
    if decoder.last_assistant_text:
        click.echo(f"Last assistant text: {decoder.last_assistant_text}")
