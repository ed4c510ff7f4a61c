"""CLI entry point for screenshare."""

from pathlib import Path

import click

from screenshare import __version__
from screenshare.config import config_from_params, load_config, validate_config
from screenshare.errors import ConfigurationError, ShareError
from screenshare.logging import setup_logging
from screenshare.sdp_filter import POLICIES, H264_ONLY, apply_policy, list_codecs


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file.",
)
@click.option("--log-level", default=None, help="Override the configured log level.")
@click.pass_context
def main(ctx: click.Context, config: Path | None, log_level: str | None) -> None:
    """screenshare - Share your screen with yourself over a TURN relay."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = load_config(config)
    if log_level:
        ctx.obj["config"].log_level = log_level
    ctx.obj["logger"] = setup_logging(ctx.obj["config"])


@main.command()
@click.option("--turn", help="TURN server, e.g. example.com:3478.")
@click.option("--turn-user", help="TURN user name.")
@click.option("--turn-pwd", help="TURN password.")
@click.option("--stun", help="STUN server (optional).")
@click.option("--stun-user", help="STUN user name.")
@click.option("--stun-pwd", help="STUN password.")
@click.option("--height", type=int, help="Ideal capture height in pixels.")
@click.option("--fps", type=int, help="Ideal capture frame rate.")
@click.option("--bitrate", type=int, help="Video bit rate in bits per second.")
@click.option("--display", help="FFmpeg capture input (e.g. :0.0).")
@click.option("--format", "capture_format", help="FFmpeg capture format (e.g. x11grab).")
@click.pass_context
def run(
    ctx: click.Context,
    turn: str | None,
    turn_user: str | None,
    turn_pwd: str | None,
    stun: str | None,
    stun_user: str | None,
    stun_pwd: str | None,
    height: int | None,
    fps: int | None,
    bitrate: int | None,
    display: str | None,
    capture_format: str | None,
) -> None:
    """Capture the screen and loop it back through the TURN server."""
    import asyncio

    from screenshare.session import ShareSession

    params = {
        "turn": turn,
        "turnUser": turn_user,
        "turnPwd": turn_pwd,
        "stun": stun,
        "stunUser": stun_user,
        "stunPwd": stun_pwd,
        "height": height,
        "fps": fps,
        "bitrate": bitrate,
        "display": display,
        "format": capture_format,
    }
    config = config_from_params(params, base=ctx.obj["config"])

    try:
        validate_config(config)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    async def _run():
        session = ShareSession(config)
        session.on_state_change(lambda state: click.echo(f"State: {state.value}"))
        session.on_latency(lambda ms: click.echo(f"Latency: {ms:.0f}ms"))
        try:
            await session.start()
            click.echo("Sharing screen. Press Ctrl+C to stop")
            return await session.wait_finished()
        finally:
            await session.stop()

    try:
        failure = asyncio.run(_run())
    except ShareError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    except KeyboardInterrupt:
        click.echo("\nStopped")
        return

    if failure is not None:
        click.echo(f"Error: {failure}", err=True)
        raise SystemExit(1)


@main.command("filter-sdp")
@click.argument("source", type=click.File("r"))
@click.option(
    "--policy",
    type=click.Choice(sorted(POLICIES)),
    default=H264_ONLY.name,
    show_default=True,
    help="Codec policy to apply.",
)
@click.option("--list", "list_only", is_flag=True, help="Only list the remaining codecs.")
def filter_sdp(source, policy: str, list_only: bool) -> None:
    """Remove disallowed codecs from an SDP file (use - for stdin)."""
    filtered = apply_policy(source.read(), POLICIES[policy])

    if not list_only:
        click.echo(filtered, nl=False)
        return

    codecs = list_codecs(filtered)
    if not codecs:
        click.echo("No codecs left.")
        return
    click.echo(f"{'PT':<6} {'Codec':<16} {'Params'}")
    click.echo("-" * 36)
    for codec in codecs:
        click.echo(f"{codec.payload_type:<6} {codec.codec:<16} {codec.params}")


@main.command()
def version() -> None:
    """Show version."""
    click.echo(f"screenshare version {__version__}")
