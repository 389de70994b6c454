"""HTTP front end: /convert downloads, rewrites and streams one subscription."""

from __future__ import annotations

import argparse
import contextlib
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Mapping
from urllib.parse import quote

import aiohttp
import yaml
from aiohttp import web

from . import __version__
from .cache import CacheStore
from .config import DEFAULT_CONFIG_FILE, ServiceConfig, load_config
from .errors import ConversionError
from .fetcher import Fetcher, ManifestSource
from .pipeline import ProcessedArtifact, convert

CONFIG_PATH_KEY = web.AppKey("config_path", Path)
SESSION_KEY = web.AppKey("session", aiohttp.ClientSession)


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


def _header_name(key: str) -> str:
    return "-".join(part.capitalize() for part in key.split("-"))


def read_request_config(config_path: Path) -> ServiceConfig:
    """Re-read the service config for each request; fall back to defaults."""
    try:
        return load_config(config_path)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        logging.error("Cannot read service config %s: %s; using defaults", config_path, exc)
        return ServiceConfig()


def resolve_path(config_path: Path, value: str) -> Path:
    path = Path(value)
    return path if path.is_absolute() else config_path.parent / path


def response_headers(artifact: ProcessedArtifact, user_agent: str, client_marker: str) -> dict[str, str]:
    """Content headers, forwarding upstream metadata to compatible clients only."""
    disposition = f"attachment; filename={quote(artifact.file_name)}"
    headers = {"Content-Type": "application/x-yaml"}
    if client_marker and client_marker.lower() in user_agent.lower():
        forwarded = artifact.forwarded_headers()
        headers["Content-Disposition"] = forwarded.pop("content-disposition", disposition)
        for key, value in forwarded.items():
            headers[_header_name(key)] = value
        logging.info("Compatible client detected, forwarding upstream headers")
    else:
        headers["Content-Disposition"] = disposition
    return headers


async def _request_params(request: web.Request) -> Mapping[str, Any]:
    if request.method != "POST":
        return request.query
    if request.content_type == "application/json":
        try:
            body = await request.json()
        except ValueError as exc:
            raise web.HTTPBadRequest(text=f"invalid JSON body: {exc}") from exc
        if not isinstance(body, dict):
            raise web.HTTPBadRequest(text="JSON body must be an object")
        return body
    return await request.post()


async def handle_convert(request: web.Request) -> web.StreamResponse:
    params = await _request_params(request)
    url = params.get("url")
    if not url:
        return web.Response(status=400, text="missing subscription url parameter (url)")
    profile_name = str(params.get("name") or "")

    config_path = request.app[CONFIG_PATH_KEY]
    config = read_request_config(config_path)
    use_cache = config.use_cache and not _flag(params.get("noCache"))
    script_path = resolve_path(config_path, config.script_path)

    try:
        try:
            routine_source = script_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConversionError(f"cannot read routine {script_path}: {exc}") from exc
        fetcher = Fetcher(
            CacheStore(resolve_path(config_path, config.cache_dir)),
            session=request.app[SESSION_KEY],
            timeout_sec=config.fetch_timeout_sec,
            user_agent=config.user_agent,
        )
        artifact = await convert(
            ManifestSource(str(url)),
            profile_name,
            routine_source,
            use_cache,
            fetcher,
            time_budget_ms=config.script_timeout_ms,
            routine_name=script_path.name,
        )
    except ConversionError as exc:
        logging.error("Conversion failed: %s", exc)
        return web.Response(status=500, text=f"error processing subscription: {exc}")

    try:
        response = web.StreamResponse(
            headers=response_headers(artifact, request.headers.get("User-Agent", ""), config.client_marker)
        )
        await response.prepare(request)
        async with contextlib.aclosing(artifact.iter_chunks()) as chunks:
            async for chunk in chunks:
                await response.write(chunk)
        await response.write_eof()
    finally:
        artifact.cleanup()
    return response


async def _client_session(app: web.Application) -> AsyncIterator[None]:
    async with aiohttp.ClientSession() as session:
        app[SESSION_KEY] = session
        yield


def create_app(config_path: Path) -> web.Application:
    app = web.Application()
    app[CONFIG_PATH_KEY] = config_path
    app.cleanup_ctx.append(_client_session)
    app.router.add_get("/convert", handle_convert)
    app.router.add_post("/convert", handle_convert)
    return app


def parse_args() -> argparse.Namespace:
    """CLI options."""
    parser = argparse.ArgumentParser(description="Subscription conversion HTTP service")
    parser.add_argument("--config", default=DEFAULT_CONFIG_FILE, help="Path to service config YAML file")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args()


def main() -> None:
    """Server entry point."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    args = parse_args()
    config_path = Path(args.config).resolve()
    config = load_config(config_path)
    logging.info("Config file: %s", config_path)
    logging.info("Script path: %s", resolve_path(config_path, config.script_path))
    logging.info("Cache fallback: %s", "on" if config.use_cache else "off")
    web.run_app(create_app(config_path), host=config.host, port=config.port)


if __name__ == "__main__":
    main()
