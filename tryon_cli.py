#!/usr/bin/env python3
"""CLI wrapper for the virtual try-on generator.

Usage:
    python tryon_cli.py --import-catalog products.json
    python tryon_cli.py --photo me.jpg --report
    python tryon_cli.py --photo me.jpg --category Hoodies --provider replicate
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import time
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

import log_setup
log_setup.configure()

import db
import generation
import tryon_core


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Generate personalised try-on images for every catalog product",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python tryon_cli.py --import-catalog products.json
  python tryon_cli.py --photo me.jpg --report
  python tryon_cli.py --photo me.jpg --product hoodie-1 --product cap-2 --json
""",
    )
    parser.add_argument("--photo", default=None, help="Shopper photo (png, jpeg or webp)")
    parser.add_argument("--import-catalog", default=None, metavar="FILE", help="Load products from a JSON file")
    parser.add_argument("--list-products", action="store_true", help="List active products and exit")
    parser.add_argument(
        "--set", action="append", default=[], metavar="KEY=JSON", dest="settings",
        help='Store a setting, e.g. --set generation=\'{"retry_delay": 5}\' (repeatable)',
    )
    parser.add_argument("--category", default=None, help="Only try on products from this category")
    parser.add_argument(
        "--product", action="append", default=[], metavar="ID",
        help="Only try on this product id (repeatable)",
    )
    parser.add_argument(
        "--provider",
        choices=["http", "replicate"],
        default=None,
        help="Generation backend (default: $TRYON_PROVIDER or http)",
    )
    parser.add_argument("--endpoint-url", default=None, help="Try-on endpoint URL for the http provider")
    parser.add_argument(
        "--image-model",
        default=None,
        help=f"Replicate model for the replicate provider (default: {generation.DEFAULT_IMAGE_MODEL})",
    )
    parser.add_argument("--priority-size", type=int, default=None, help="Products in the priority batch (default: 3)")
    parser.add_argument("--priority-concurrency", type=int, default=None, help="Priority batch concurrency (default: 3)")
    parser.add_argument("--background-concurrency", type=int, default=None, help="Background batch concurrency (default: 2)")
    parser.add_argument("--timeout", type=float, default=None, help="Per-request deadline in seconds (default: 90)")
    parser.add_argument("--max-attempts", type=int, default=None, help="Attempts per product (default: 2)")
    parser.add_argument("--retry-delay", type=float, default=None, help="Seconds between attempts (default: 2)")
    parser.add_argument(
        "--output-dir",
        default="cli_output",
        help="Directory to save images and reports (default: cli_output)",
    )
    parser.add_argument("--report", action="store_true", help="Generate HTML try-on gallery")
    parser.add_argument("--json", action="store_true", help="Print final run state as JSON to stdout")

    args = parser.parse_args(argv)

    db.init_db()

    if args.import_catalog:
        try:
            count = _import_catalog(Path(args.import_catalog))
        except (OSError, ValueError, KeyError) as exc:
            print(f"✗  Catalog import failed: {exc}", file=sys.stderr)
            return 2
        _echo(f"  ✓ Imported {count} products from {args.import_catalog}")

    for item in args.settings:
        key, sep, raw = item.partition("=")
        if not sep or not key:
            print(f"✗  Expected KEY=JSON, got {item!r}", file=sys.stderr)
            return 2
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            value = raw  # plain strings such as prompt templates
        db.upsert_setting(key, value)
        _echo(f"  ✓ Setting saved: {key}")

    if args.list_products:
        _list_products(args.category)
        return 0

    if not args.photo:
        if args.import_catalog or args.settings:
            return 0
        parser.error("--photo is required")

    photo_path = Path(args.photo)
    if not photo_path.is_file():
        print(f"✗  Photo not found: {photo_path}", file=sys.stderr)
        return 2

    if args.product:
        rows = [r for r in (db.get_product(pid) for pid in args.product) if r]
    else:
        rows = db.list_active_products(args.category)
    if not rows:
        print("✗  No matching products in the catalog (use --import-catalog)", file=sys.stderr)
        return 2
    products = [tryon_core.Product.from_dict(r) for r in rows]

    overrides = {
        "priority_size": args.priority_size,
        "priority_concurrency": args.priority_concurrency,
        "background_concurrency": args.background_concurrency,
        "request_timeout": args.timeout,
        "max_attempts": args.max_attempts,
        "retry_delay": args.retry_delay,
    }
    policy_settings = dict(db.get_setting("generation", {}))
    policy_settings.update({k: v for k, v in overrides.items() if v is not None})

    client_settings = {
        "prompt_template": db.get_setting("prompt_template"),
        **db.get_setting("provider", {}),
    }
    for key, value in (
        ("provider", args.provider),
        ("endpoint_url", args.endpoint_url),
        ("image_model", args.image_model),
    ):
        if value:
            client_settings[key] = value

    try:
        policy = tryon_core.RunPolicy.from_settings(policy_settings)
        client = generation.build_client(client_settings)
    except (RuntimeError, ValueError) as exc:
        print(f"✗  {exc}", file=sys.stderr)
        return 2

    output_dir = Path(args.output_dir) / f"{photo_path.stem}_{int(time.time())}"
    output_dir.mkdir(parents=True, exist_ok=True)

    _echo(f"\n  ✦ Virtual Try-On CLI")
    _echo(f"  Photo    : {photo_path}")
    _echo(f"  Products : {len(products)}")
    _echo(f"  Backend  : {type(client).__name__}")
    _echo(
        f"  Batches  : first {policy.priority_size} @ {policy.priority_concurrency}, "
        f"rest @ {policy.background_concurrency}"
    )
    _echo(f"  Output   : {output_dir}\n")

    photo = generation.ImageBlob(
        photo_path.read_bytes(),
        _guess_mime(photo_path),
        photo_path.name,
    )
    state = asyncio.run(_run(client, policy, photo, products))

    images: Dict[str, str] = {}
    for task in state.tasks:
        if task.status == tryon_core.READY and task.image_url:
            saved = tryon_core.save_image(task.image_url, output_dir / f"{task.product_id}.png")
            images[task.product_id] = saved or task.image_url
        else:
            images[task.product_id] = task.image_url or ""

    _echo(f"\n  ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━")
    _echo(f"  Generated: {state.success_count}/{state.total_count}")
    _echo(f"  Fallback : {state.error_count}")
    _echo(f"  Duration : {state.duration or 0:.1f}s")
    _echo(f"  Output   : {output_dir}\n")

    if args.json:
        out = state.to_dict()
        out["saved_images"] = images
        print(json.dumps(out, indent=2))

    if args.report:
        _write_report(output_dir, products, state, images)

    if state.total_count and not state.success_count:
        return 1
    return 0


async def _run(
    client,
    policy: tryon_core.RunPolicy,
    photo: generation.ImageBlob,
    products: List[tryon_core.Product],
) -> tryon_core.TryOnState:
    seen: Dict[str, str] = {}

    def progress_cb(state: tryon_core.TryOnState) -> None:
        for task in state.tasks:
            if seen.get(task.product_id) == task.status:
                continue
            seen[task.product_id] = task.status
            prefix, msg = {
                tryon_core.GENERATING: ("  ◌ ", f"Generating {task.product_name}…"),
                tryon_core.READY:      ("  ✓ ", f"{task.product_name} ready"),
                tryon_core.ERROR:      ("  ✗ ", f"{task.product_name} failed, using original photo"),
            }.get(task.status, (None, None))
            if prefix:
                _echo(f"{prefix}{msg}  [{state.ready_count}/{state.total_count}]")

    def on_results_ready(run_id: int) -> None:
        _echo("  ★ First results ready")

    coordinator = tryon_core.RunCoordinator(client, policy=policy, on_results_ready=on_results_ready)
    coordinator.subscribe(progress_cb)
    try:
        coordinator.start_run(photo, products)
        return await coordinator.wait()
    finally:
        coordinator.close()
        await client.aclose()


def _import_catalog(path: Path) -> int:
    """Load [{id, name, category, image_url, sort_order?, colors?}] into the catalog."""
    entries = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(entries, list):
        raise ValueError("catalog must be a JSON list of products")
    for i, entry in enumerate(entries):
        db.upsert_product(
            str(entry["id"]),
            entry["name"],
            entry.get("category", ""),
            entry["image_url"],
            sort_order=entry.get("sort_order", i),
            is_active=entry.get("is_active", True),
            description=entry.get("description"),
            price=entry.get("price"),
        )
        for color in entry.get("colors", []):
            db.add_color_variant(
                str(entry["id"]),
                color["color_name"],
                color.get("color_hex", "#000000"),
                color["image_url"],
                is_default=color.get("is_default", False),
            )
    return len(entries)


def _guess_mime(path: Path) -> str:
    suffix = path.suffix.lower()
    return {
        ".png": "image/png",
        ".jpg": "image/jpeg",
        ".jpeg": "image/jpeg",
        ".webp": "image/webp",
    }.get(suffix, "application/octet-stream")


def _write_report(
    output_dir: Path,
    products: List[tryon_core.Product],
    state: tryon_core.TryOnState,
    images: Dict[str, str],
) -> None:
    """Write a simple standalone HTML try-on gallery."""

    def figure(product: tryon_core.Product) -> str:
        task = state.task(product.id)
        status = task.status if task else tryon_core.PENDING
        path = images.get(product.id, "") or product.reference_image_url
        try:
            src = str(Path(path).relative_to(output_dir))
        except ValueError:
            src = path
        label = "Personalised" if status == tryon_core.READY else "Original photo"
        return (
            f'<figure class="{status}"><a href="{src}" target="_blank"><img src="{src}" alt="{product.name}"></a>'
            f"<figcaption>{product.name}<span>{label}</span></figcaption></figure>"
        )

    gallery = "".join(figure(p) for p in products)

    html = f"""<!doctype html><html><head><meta charset="utf-8"><title>Try-on results</title>
<style>
*{{box-sizing:border-box}}body{{margin:0;font-family:Inter,sans-serif;color:#111;background:#f7f5f2}}
.page{{max-width:1120px;margin:0 auto;padding:48px 32px 96px}}
h1{{font-size:40px;margin:0 0 8px}}.meta{{color:#666;margin:0 0 32px}}
.grid{{display:grid;grid-template-columns:repeat(auto-fit,minmax(220px,1fr));gap:18px}}
figure{{margin:0;background:#fff;border-radius:12px;padding:10px;box-shadow:0 8px 24px rgba(0,0,0,.08)}}
figure.error{{opacity:.75}}
figure img{{width:100%;border-radius:8px;display:block}}
figcaption{{font-size:13px;margin-top:8px;display:flex;justify-content:space-between}}
figcaption span{{color:#888;text-transform:uppercase;letter-spacing:.08em}}
</style></head><body><div class="page">
<h1>Your try-on gallery</h1>
<p class="meta">{state.success_count} of {state.total_count} personalised in {state.duration or 0:.0f}s</p>
<div class="grid">{gallery}</div>
</div></body></html>"""

    report_path = output_dir / "report.html"
    report_path.write_text(html, encoding="utf-8")
    _echo(f"  ✓ Report saved: {report_path}")


def _list_products(category: Optional[str]) -> None:
    rows = db.list_active_products(category)
    print("\nActive Products")
    print("─" * 40)
    if not rows:
        print("  (none - use --import-catalog)")
    for r in rows:
        color = f"  [{r['color_name']}]" if r.get("color_name") else ""
        print(f"  {r['id']:<16} {r['name']}  ({r['category']}){color}")
    print()


def _echo(msg: str) -> None:
    print(msg, flush=True)


if __name__ == "__main__":
    raise SystemExit(main())
