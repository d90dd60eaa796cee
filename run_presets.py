#!/usr/bin/env python3
"""
🎯 Preset Load Profiles
=======================
Named storefront load profiles from a light smoke run to a soak test.

Usage:
    python run_presets.py https://staging.your-site.com light
    python run_presets.py https://staging.your-site.com heavy --config load-test.yaml
    python run_presets.py https://staging.your-site.com soak --i-know-what-im-doing
"""

import argparse
import asyncio
import sys
from dataclasses import replace
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm

from load_config import ConfigurationError, LoadTestSettings, format_duration, load_settings
from storefront_load_test import run_test, setup_logging

console = Console()

# =============================================================================
# PRESET CONFIGURATIONS
# =============================================================================

PRESETS = {
    "light": {
        "name": "🌱 Light",
        "description": "Smoke run: 10 shoppers for 1 minute",
        "params": {
            "virtual_users": 10,
            "ramp_up_duration": 10.0,
            "sustained_duration": 60.0,
            "ramp_down_duration": 5.0,
        },
    },
    "medium": {
        "name": "🏃 Medium",
        "description": "Normal production-like traffic: 20 shoppers for 2 minutes",
        "params": {
            "virtual_users": 20,
            "ramp_up_duration": 30.0,
            "sustained_duration": 120.0,
            "ramp_down_duration": 10.0,
        },
    },
    "heavy": {
        "name": "🏋️ Heavy",
        "description": "Sale-day traffic: 50 shoppers for 3 minutes",
        "params": {
            "virtual_users": 50,
            "ramp_up_duration": 60.0,
            "sustained_duration": 180.0,
            "ramp_down_duration": 30.0,
        },
    },
    "stress": {
        "name": "💪 Stress",
        "description": "Find the breaking point: 100 shoppers for 5 minutes",
        "params": {
            "virtual_users": 100,
            "ramp_up_duration": 120.0,
            "sustained_duration": 300.0,
            "ramp_down_duration": 30.0,
        },
        "dangerous": True,
    },
    "soak": {
        "name": "🌊 Soak",
        "description": "500 shoppers for 5 minutes with 30% of requests bypassing the page cache",
        "params": {
            "virtual_users": 500,
            "ramp_up_duration": 180.0,
            "sustained_duration": 300.0,
            "ramp_down_duration": 60.0,
        },
        "cache_bypass": 0.3,
        "dangerous": True,
    },
}


def print_presets():
    """Print all available presets."""
    console.print("\n[bold]Available Presets:[/bold]\n")
    for key, preset in PRESETS.items():
        danger_flag = "[red]⚠️ DANGEROUS[/red] " if preset.get("dangerous") else ""
        console.print(f"  [cyan]{key:<8}[/cyan] {preset['name']:<12} {danger_flag}- {preset['description']}")
    console.print("")


def apply_preset(settings: LoadTestSettings, preset_name: str) -> LoadTestSettings:
    """Settings with the preset's load shape (and cache bypass share, if it sets one)."""
    preset = PRESETS[preset_name]
    settings = replace(settings, load_test=replace(settings.load_test, **preset["params"]))
    if "cache_bypass" in preset:
        settings = replace(settings, cache_bypass=replace(
            settings.cache_bypass, enabled=True, percentage=preset["cache_bypass"]))
    return settings


def confirm_dangerous(preset: dict) -> bool:
    console.print(Panel(
        f"[bold red]⚠️  WARNING: {preset['name']} is DANGEROUS![/bold red]\n\n"
        f"{preset['description']}\n\n"
        f"This can take a storefront down and may get your IP rate limited or banned.\n\n"
        f"[yellow]Only use on systems you own or have permission to test![/yellow]",
        title="⚠️ Dangerous Preset",
        border_style="red"
    ))
    return Confirm.ask("Do you want to proceed?")


async def run_preset(settings: LoadTestSettings, preset_name: str, dangerous_confirmed: bool = False,
                     output: Optional[str] = None, seed: Optional[int] = None) -> Optional[bool]:
    """Run a preset. Returns the threshold verdict, or None if nothing ran."""
    preset = PRESETS[preset_name]

    # Safety check for dangerous presets
    if preset.get("dangerous") and not dangerous_confirmed and not confirm_dangerous(preset):
        console.print("[dim]Cancelled.[/dim]")
        return None

    settings = apply_preset(settings, preset_name)
    shape = settings.load_test
    console.print(Panel(
        f"[bold]{preset['name']}[/bold]\n\n{preset['description']}\n"
        f"{shape.virtual_users} VUs, {format_duration(shape.sustained_duration)} sustained",
        title=f"Running Preset: {preset_name}",
        border_style="blue"
    ))
    return await run_test(settings, seed=seed, output=output)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="🎯 Storefront load test presets")
    parser.add_argument("url", nargs="?", help="Storefront origin")
    parser.add_argument("preset", nargs="?", help="Preset name")
    parser.add_argument("--config", "-c", type=str, help="YAML/JSON settings document")
    parser.add_argument("--output", "-o", type=str, help="Output file for JSON report")
    parser.add_argument("--seed", type=int, help="Random seed for reproducible journeys")
    parser.add_argument("--i-know-what-im-doing", dest="dangerous_confirmed", action="store_true",
                        help="Skip the confirmation prompt for dangerous presets")
    parser.add_argument("--log-level", default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    args = parser.parse_args(argv)

    if not args.url or not args.preset:
        console.print("[bold]Usage:[/bold] python run_presets.py <URL> <PRESET> [--i-know-what-im-doing]")
        print_presets()
        return 0 if args.url in (None, "help") else 2

    if args.preset not in PRESETS:
        console.print(f"[red]Unknown preset: {args.preset}[/red]")
        print_presets()
        return 2

    setup_logging(args.log_level)
    try:
        settings = load_settings(args.config, base_url=args.url)
    except ConfigurationError as e:
        console.print(f"[red]❌ {e}[/red]")
        return 2

    passed = asyncio.run(run_preset(settings, args.preset, args.dangerous_confirmed, args.output, args.seed))
    if passed is None:
        return 0
    return 0 if passed else 1


if __name__ == "__main__":
    sys.exit(main())
