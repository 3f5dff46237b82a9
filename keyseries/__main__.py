"""CLI entrypoint for KeySeries annotation maintenance.

Usage:
    python -m keyseries stats <annotations_dir> [--json]
    python -m keyseries renumber <annotations_dir> [--image ID] [--dry-run]
    python -m keyseries migrate <annotations_dir> [--dry-run]
    python -m keyseries export <annotations_dir> -o bundle.json
    python -m keyseries import <annotations_dir> bundle.json
    python -m keyseries preview <series.yaml> <annotations_dir> --image ID
                                [--zoom 2] [--order N] [--type T] -o preview.png
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from keyseries.config import KeySeriesConfig
from keyseries.errors import KeySeriesError
from keyseries.keypoints import RegularKeypointStore
from keyseries.manager import CustomAnnotationManager
from keyseries.migration import MigrationReport, repair_store
from keyseries.ordering import ScopeStats, renumber_all, scope_stats
from keyseries.preview import PreviewResult, ReferencePreviewEngine
from keyseries.series import FileImageSource, ManifestSeriesProvider
from keyseries.storage import JsonAnnotationStore
from keyseries.types import REGULAR_SCOPE, Scope
from keyseries.utils.image import save_image

console = Console()
logger = logging.getLogger(__name__)


def _open_store(directory: Path, config: KeySeriesConfig) -> JsonAnnotationStore:
    return JsonAnnotationStore(
        directory,
        indent=config.storage.indent,
        custom_types_filename=config.storage.custom_types_filename,
    )


def _load_collections(
    store: JsonAnnotationStore, config: KeySeriesConfig
) -> tuple[CustomAnnotationManager, RegularKeypointStore]:
    """Manager + keypoint store hydrated with every image in *store*."""
    keypoints = RegularKeypointStore(persistence=store)
    manager = CustomAnnotationManager(
        limits=config.limits,
        persistence=store,
        companion=keypoints,
        events=keypoints.events,
        type_store=store,
    )
    keypoints.companion = manager
    manager.reload_types()
    for image_id in store.image_ids():
        annotations = store.load_annotations(image_id)
        keypoints.load_image(image_id, annotations)
        manager.load_image(image_id, annotations)
    return manager, keypoints


# ---------------------------------------------------------------------------
# Report builders
# ---------------------------------------------------------------------------


def _build_stats_table(per_image: dict[str, list[ScopeStats]]) -> Table:
    table = Table(title="Annotation Scopes", show_lines=False)
    table.add_column("Image", style="cyan")
    table.add_column("Scope")
    table.add_column("Count", justify="right")
    table.add_column("Orders", justify="center")
    table.add_column("Gaps")
    table.add_column("Duplicates")

    for image_id, scopes in per_image.items():
        if not scopes:
            table.add_row(image_id, "[dim]-[/dim]", "0", "", "", "")
            continue
        for s in scopes:
            gaps = ", ".join(map(str, s.gaps)) if s.gaps else "[green]none[/green]"
            dupes = ", ".join(map(str, s.duplicates)) if s.duplicates else ""
            table.add_row(
                image_id,
                s.scope.label,
                str(s.count),
                f"{s.min_order}-{s.max_order}",
                gaps if not s.gaps else f"[yellow]{gaps}[/yellow]",
                f"[red]{dupes}[/red]" if dupes else "",
            )
    return table


def _build_migration_panel(report: MigrationReport) -> Panel:
    title = "Migration (dry run)" if report.dry_run else "Migration"
    lines = [
        f"[bold]Images scanned:[/bold] {report.images_scanned}",
        f"[bold]Images changed:[/bold] {report.images_changed}",
        f"[bold]Records changed:[/bold] {report.records_changed}",
    ]
    for image_id, changes in report.changes.items():
        lines.append(f"  [cyan]{image_id}[/cyan]")
        lines.extend(f"    {c}" for c in changes)
    return Panel("\n".join(lines), title=title, border_style="blue")


def _preview_to_dict(result: PreviewResult, output: Path | None) -> dict:
    return {
        "status": result.status.value,
        "targetOrder": result.target_order,
        "reason": result.reason,
        "plan": result.plan.to_dict() if result.plan else None,
        "output": str(output) if output else None,
    }


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_stats(args: argparse.Namespace, config: KeySeriesConfig) -> int:
    store = _open_store(args.annotations_dir, config)
    per_image: dict[str, list[ScopeStats]] = {}
    for image_id in store.image_ids():
        per_image[image_id] = list(scope_stats(store.load_annotations(image_id)).values())

    total = sum(s.count for scopes in per_image.values() for s in scopes)
    with_gaps = sum(1 for scopes in per_image.values() if any(s.gaps for s in scopes))

    if args.json:
        output = {
            "images": {k: [s.to_dict() for s in v] for k, v in per_image.items()},
            "totalImages": len(per_image),
            "totalAnnotations": total,
            "imagesWithGaps": with_gaps,
        }
        print(json.dumps(output, indent=2))
        return 0

    console.print(_build_stats_table(per_image))
    console.print(
        f"[bold]{len(per_image)}[/bold] image(s), [bold]{total}[/bold] annotation(s), "
        f"[bold]{with_gaps}[/bold] with gaps"
    )
    return 0


def _cmd_renumber(args: argparse.Namespace, config: KeySeriesConfig) -> int:
    store = _open_store(args.annotations_dir, config)
    image_ids = [args.image] if args.image else store.image_ids()
    changed: dict[str, int] = {}
    for image_id in image_ids:
        annotations = store.load_annotations(image_id)
        count = renumber_all(annotations)
        if count:
            changed[image_id] = count
            if not args.dry_run:
                store.save_annotations(image_id, annotations)

    if args.json:
        print(json.dumps({"dryRun": args.dry_run, "changed": changed}, indent=2))
        return 0

    verb = "Would renumber" if args.dry_run else "Renumbered"
    if not changed:
        console.print("[green]All scopes are already dense[/green]")
    for image_id, count in changed.items():
        console.print(f"{verb} {count} annotation(s) in [cyan]{image_id}[/cyan]")
    return 0


def _cmd_migrate(args: argparse.Namespace, config: KeySeriesConfig) -> int:
    store = _open_store(args.annotations_dir, config)
    report = repair_store(store, dry_run=args.dry_run)
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        console.print(_build_migration_panel(report))
    return 0


def _cmd_export(args: argparse.Namespace, config: KeySeriesConfig) -> int:
    store = _open_store(args.annotations_dir, config)
    manager, _ = _load_collections(store, config)
    payload = manager.export_data()
    args.output.parent.mkdir(parents=True, exist_ok=True)
    with open(args.output, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=config.storage.indent, ensure_ascii=False)
        f.write("\n")

    summary = {
        "output": str(args.output),
        "customTypes": len(payload["customTypes"]),
        "customAnnotations": len(payload["customAnnotations"]),
    }
    if args.json:
        print(json.dumps(summary, indent=2))
    else:
        console.print(
            f"Exported {summary['customTypes']} type(s) and "
            f"{summary['customAnnotations']} annotation(s) to [cyan]{args.output}[/cyan]"
        )
    return 0


def _cmd_import(args: argparse.Namespace, config: KeySeriesConfig) -> int:
    if not args.bundle.is_file():
        console.print(f"[red]Error: {args.bundle} not found[/red]")
        return 1
    with open(args.bundle, encoding="utf-8") as f:
        payload = json.load(f)

    store = _open_store(args.annotations_dir, config)
    manager, _ = _load_collections(store, config)
    result = manager.import_data(payload)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
        return 0
    lines = [
        f"[bold]Types added:[/bold] {result.types_added} (skipped {result.types_skipped})",
        f"[bold]Annotations added:[/bold] {result.annotations_added} "
        f"(skipped {result.annotations_skipped})",
    ]
    lines.extend(f"[yellow]{w}[/yellow]" for w in result.warnings)
    console.print(Panel("\n".join(lines), title="Import", border_style="green"))
    return 0


def _cmd_preview(args: argparse.Namespace, config: KeySeriesConfig) -> int:
    if not args.series.is_file():
        console.print(f"[red]Error: {args.series} not found[/red]")
        return 1
    store = _open_store(args.annotations_dir, config)
    provider = ManifestSeriesProvider.from_manifest(args.series, store=store)
    ref = provider.get(args.image)
    if ref is None:
        console.print(f"[red]Error: image {args.image!r} is not in {args.series}[/red]")
        return 1

    engine = ReferencePreviewEngine(provider, FileImageSource(), config.preview)
    engine.set_context(ref, provider.index_of(ref.id))
    if args.zoom is not None:
        engine.set_zoom(args.zoom)
    scope = Scope.custom(args.type) if args.type else REGULAR_SCOPE
    if args.order is not None:
        result = engine.show_specific_order(args.order, scope)
    else:
        result = engine.update(store.load_annotations(ref.id), scope)

    output = None
    if result.ok:
        save_image(args.output, engine.render(result.plan))
        output = args.output

    if args.json:
        print(json.dumps(_preview_to_dict(result, output), indent=2))
    elif result.ok:
        plan = result.plan
        console.print(
            Panel(
                f"[bold]Reference image:[/bold] {plan.source_image.id} "
                f"({plan.source_image.time_label})\n"
                f"[bold]Target order:[/bold] {plan.target_order} ({plan.scope.label})\n"
                f"[bold]Crop:[/bold] x={plan.window.x} y={plan.window.y} "
                f"size={plan.window.width}x{plan.window.height} at {plan.zoom_label}\n"
                f"[bold]Output:[/bold] {output}",
                title="Reference Preview",
                border_style="green",
            )
        )
    else:
        console.print(f"[yellow]No reference: {result.reason}[/yellow]")
    return 0 if result.ok else 1


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Maintain and inspect time-series keypoint annotations.",
        prog="python -m keyseries",
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", type=Path, default=None, help="KeySeries config YAML")
    common.add_argument("--json", action="store_true", help="Output JSON instead of rich report")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("stats", parents=[common], help="Per-image scope counts and order gaps")
    p.add_argument("annotations_dir", type=Path)

    p = sub.add_parser("renumber", parents=[common], help="Close order gaps in every scope")
    p.add_argument("annotations_dir", type=Path)
    p.add_argument("--image", default=None, help="Only this image id")
    p.add_argument("--dry-run", action="store_true", help="Report without writing")

    p = sub.add_parser(
        "migrate", parents=[common], help="Rewrite legacy records in the current format"
    )
    p.add_argument("annotations_dir", type=Path)
    p.add_argument("--dry-run", action="store_true", help="Report without writing")

    p = sub.add_parser(
        "export", parents=[common], help="Write custom types and annotations as a bundle"
    )
    p.add_argument("annotations_dir", type=Path)
    p.add_argument("--output", "-o", type=Path, required=True, help="Bundle JSON path")

    p = sub.add_parser(
        "import", parents=[common], help="Import a bundle (existing ids are skipped)"
    )
    p.add_argument("annotations_dir", type=Path)
    p.add_argument("bundle", type=Path)

    p = sub.add_parser(
        "preview", parents=[common], help="Render the reference preview for an image"
    )
    p.add_argument("series", type=Path, help="Path to series.yaml")
    p.add_argument("annotations_dir", type=Path)
    p.add_argument("--image", required=True, help="Image being annotated")
    p.add_argument("--zoom", type=float, default=None, help="Zoom level")
    p.add_argument("--order", type=int, default=None, help="Preview this order explicitly")
    p.add_argument("--type", default=None, help="Custom type id (default: regular keypoints)")
    p.add_argument("--output", "-o", type=Path, required=True, help="Output PNG path")
    return parser


_COMMANDS = {
    "stats": _cmd_stats,
    "renumber": _cmd_renumber,
    "migrate": _cmd_migrate,
    "export": _cmd_export,
    "import": _cmd_import,
    "preview": _cmd_preview,
}


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not args.json:
        logging.basicConfig(
            level=logging.INFO,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_time=True, show_path=False)],
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    annotations_dir = getattr(args, "annotations_dir", None)
    if annotations_dir is not None and args.command != "import" and not annotations_dir.is_dir():
        console.print(f"[red]Error: {annotations_dir} not found[/red]")
        return 1

    config = KeySeriesConfig.from_yaml(args.config) if args.config else KeySeriesConfig.default()

    try:
        return _COMMANDS[args.command](args, config)
    except KeySeriesError as e:
        logger.debug("Command failed", exc_info=True)
        console.print(f"[red]Error: {e}[/red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
