"""
DocVault CLI — Inspect folders, documents and signed URLs from a shell.

Commands:
- docvault folders                       — Company folder listing
- docvault employees COMPANY             — Employee folders of one company
- docvault documents --company NAME      — Documents under a company
- docvault documents --employee ID       — Documents of one employee
- docvault url DOCUMENT_ID               — Presigned URL for a document
- docvault refresh                       — Clear caches and rebuild the company listing
- docvault health                        — Database / object store / signing probes

Every command accepts --config and prints JSON to stdout.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Awaitable, Callable, Optional

from docvault.db.source import SqlAlchemySource
from docvault.documents.models import DocumentScope
from docvault.documents.service import DocumentFolderService
from docvault.engine.config import DocVaultConfig, load_config
from docvault.engine.errors import DocVaultError
from docvault.engine.health import HealthCheckService, HealthStatus
from docvault.engine.logging import (
    configure_logging,
    init_logging,
    log,
    log_system_event,
    shutdown_logging,
)

logger = logging.getLogger("docvault.cli")


def build_service(config: DocVaultConfig) -> DocumentFolderService:
    return DocumentFolderService.from_config(config)


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="docvault",
        description="DocVault — document folder resolution and caching",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    def add(name: str, help_text: str) -> argparse.ArgumentParser:
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--config", default=None, help="Path to docvault.yaml (default: discover from CWD)")
        return sub

    add("folders", "List company folders")

    employees_parser = add("employees", "List employee folders of a company")
    employees_parser.add_argument("company", help="Company display name or raw prefix")

    documents_parser = add("documents", "List documents")
    scope = documents_parser.add_mutually_exclusive_group(required=True)
    scope.add_argument("--company", help="Company display name or raw prefix")
    scope.add_argument("--employee", help="Employee id")

    url_parser = add("url", "Presigned URL for a document")
    url_parser.add_argument("document_id", help="Document id")

    add("refresh", "Clear caches and rebuild the company listing")
    add("health", "Probe database, object store and signing endpoints")

    args = parser.parse_args(argv)

    commands = {
        "folders": cmd_folders,
        "employees": cmd_employees,
        "documents": cmd_documents,
        "url": cmd_url,
        "refresh": cmd_refresh,
        "health": cmd_health,
    }
    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 0
    return _run(args, handler)


def _run(args: argparse.Namespace, handler: Callable[[DocumentFolderService, argparse.Namespace], Awaitable[int]]) -> int:
    try:
        config = load_config(args.config)
    except DocVaultError as e:
        print(f"[ERROR] {e.message}", file=sys.stderr)
        return 1

    configure_logging(config.logging.level)
    if config.logging.structured:
        queue = config.logging.async_queue
        init_logging(
            config.logging.directory,
            flush_interval_ms=queue.flush_interval_ms,
            flush_batch_size=queue.flush_batch_size,
            max_queue_size=queue.max_queue_size,
        )
    log(log_system_event("cli_command", details={"command": args.command, "environment": config.environment}))

    async def go() -> int:
        service = build_service(config)
        try:
            return await handler(service, args)
        finally:
            await service.aclose()

    try:
        return asyncio.run(go())
    except DocVaultError as e:
        logger.debug(f"{args.command} failed: {e!r}")
        print(f"[ERROR] {e.message}", file=sys.stderr)
        return 1
    finally:
        shutdown_logging()


async def cmd_folders(service: DocumentFolderService, args: argparse.Namespace) -> int:
    listing = await service.list_company_folders()
    _emit(listing.to_dict())
    return 0


async def cmd_employees(service: DocumentFolderService, args: argparse.Namespace) -> int:
    listing = await service.list_employee_folders(args.company)
    _emit(listing.to_dict())
    return 0


async def cmd_documents(service: DocumentFolderService, args: argparse.Namespace) -> int:
    if args.company:
        scope = DocumentScope.company(args.company)
    else:
        scope = DocumentScope.employee(args.employee)
    rows = await service.list_documents(scope)
    _emit([row.to_record() for row in rows])
    return 0


async def cmd_url(service: DocumentFolderService, args: argparse.Namespace) -> int:
    url = await service.get_presigned_url(args.document_id)
    _emit({"document_id": args.document_id, "url": url})
    return 0


async def cmd_refresh(service: DocumentFolderService, args: argparse.Namespace) -> int:
    listing = await service.force_refresh()
    _emit({"folders": len(listing), "degraded": listing.degraded})
    return 0


async def cmd_health(service: DocumentFolderService, args: argparse.Namespace) -> int:
    health = HealthCheckService()
    if isinstance(service.source, SqlAlchemySource):
        health.register_database_check("database", service.source.engine)
    health.register_object_store_check("object_store", service.store)

    config = service.config
    if config.signing.edge_function_url:
        health.register_http_check("edge_function", config.signing.edge_function_url, config.signing.timeout)
    if config.signing.preview_route_url:
        health.register_http_check("preview_route", config.signing.preview_route_url, config.signing.timeout)

    await health.check_all()
    summary = health.get_platform_health()
    _emit(summary)
    return 0 if summary["status"] == HealthStatus.HEALTHY.value else 1


if __name__ == "__main__":
    sys.exit(main())
