#!/usr/bin/env python3
"""
CLI module for Halftone Pie - Command-Line Interface

Provides command-line interface for rendering images (local files, URLs or
whole folders) as halftone dot grids. Uses Rich for terminal output.
"""

import sys
import logging
import argparse
import asyncio
import json
from pathlib import Path
from typing import Optional, List, Dict, Any

from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn
from rich.panel import Panel

from halftone_lib import (
    ColorMode,
    DotType,
    EffectType,
    HalftoneError,
    HalftoneOptions,
    HalftoneResult,
    render_source,
    render_source_async,
)
from utils import PaletteManager, SourceUnavailableError, is_url, validate_image_file
from config_manager import ConfigManager


console = Console()

logger = logging.getLogger('halftone_pie')


def setup_logging(verbose: bool = False, quiet: bool = False, log_file: Optional[str] = None):
    """
    Setup logging with Rich handler for terminal output.

    Args:
        verbose: Enable verbose (DEBUG) logging
        quiet: Suppress all but ERROR messages
        log_file: Optional path to log file
    """
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    handlers = []

    rich_handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        markup=True,
        rich_tracebacks=True
    )
    handlers.append(rich_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setFormatter(
            logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
        force=True
    )

    logger.setLevel(level)
    return logger


class CLIProgressCallback:
    """
    Rich progress bar for folder batches, advanced once per image.
    """

    def __init__(self, total: int):
        self.total = total
        self.progress = None
        self.task = None

    def __enter__(self):
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console
        )
        self.progress.__enter__()
        self.task = self.progress.add_task("Rendering halftones...", total=self.total)
        return self

    def __exit__(self, *args):
        if self.progress:
            self.progress.__exit__(*args)

    def update(self, completed: int, message: str):
        """
        Update progress bar.

        Args:
            completed: Number of images handled so far
            message: Status message
        """
        if self.progress and self.task is not None:
            self.progress.update(self.task, completed=completed, description=message)

    def finish(self):
        if self.progress and self.task is not None:
            self.progress.update(self.task, completed=self.total, description="Complete!")


# ==================== Config Schema & Validation ====================

VALID_MODES = ["image", "folder"]
CUSTOM_PALETTE_PREFIX = "custom:"


class ConfigValidationError(Exception):
    """Raised when config validation fails."""
    pass


def resolve_gradient_colors(value: Any, palette_file: Path) -> List[str]:
    """
    Resolve the gradientColors setting to a list of color strings.

    Accepts a list of colors or "custom:<name>" naming a palette in
    the palette file.

    Raises:
        ConfigValidationError: If the palette is unknown or the value malformed
    """
    if isinstance(value, str):
        if not value.startswith(CUSTOM_PALETTE_PREFIX):
            raise ConfigValidationError(
                f"'halftone.gradientColors' must be a list or '{CUSTOM_PALETTE_PREFIX}<name>'"
            )
        name = value[len(CUSTOM_PALETTE_PREFIX):]
        palettes = PaletteManager(str(palette_file))
        colors = palettes.get_palette_colors(name)
        if colors is None:
            available = ", ".join(palettes.list_palette_names()) or "none"
            raise ConfigValidationError(
                f"Custom palette not found: {name} (available: {available})"
            )
        logger.debug(f"Loaded custom palette [cyan]{name}[/] ({len(colors)} colors)")
        return colors

    if not isinstance(value, list) or not all(isinstance(c, str) for c in value):
        raise ConfigValidationError("'halftone.gradientColors' must be a list of color strings")
    return value


OPTION_TYPES = {
    'bool': (lambda v: isinstance(v, bool), "true or false"),
    'int': (lambda v: isinstance(v, int) and not isinstance(v, bool), "an integer"),
    'float': (lambda v: isinstance(v, (int, float)) and not isinstance(v, bool), "a number"),
    'choice': (lambda v: isinstance(v, str), "a string"),
    'color': (lambda v: isinstance(v, str), "a color string"),
}


def check_option_types(halftone: Dict[str, Any]) -> List[str]:
    """
    Check halftone option values against the types declared in
    HalftoneOptions.get_parameter_info().

    Returns:
        One error message per mistyped option
    """
    errors = []
    for key, info in HalftoneOptions.get_parameter_info().items():
        value = halftone.get(key)
        if value is None or info['type'] not in OPTION_TYPES:
            continue
        check, expected = OPTION_TYPES[info['type']]
        if not check(value):
            errors.append(f"'halftone.{key}' must be {expected}, got {value!r}")
    return errors


def _resolve_path(value: str, config_dir: Path) -> str:
    path = Path(value)
    if not path.is_absolute():
        path = (config_dir / path).resolve()
    return str(path)


def validate_config(config: Dict[str, Any], config_path: Path,
                    defaults: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Validate configuration and return normalized config.

    Args:
        config: Raw config dictionary
        config_path: Path to config file (for resolving relative paths)
        defaults: Preferred halftone options; the config's own options win

    Returns:
        Validated and normalized config; config["options"] holds the
        parsed HalftoneOptions

    Raises:
        ConfigValidationError: If validation fails
    """
    errors = []
    config_dir = config_path.parent

    for field in ("input", "output"):
        if field not in config:
            errors.append(f"Missing required field: '{field}'")
        elif not isinstance(config[field], str):
            errors.append(f"'{field}' must be a path string, got {config[field]!r}")

    palette_name = config.get("palette_file", "palette.json")
    if not isinstance(palette_name, str):
        errors.append(f"'palette_file' must be a path string, got {palette_name!r}")
        palette_name = "palette.json"

    mode = config.get("mode")
    if mode and mode not in VALID_MODES:
        errors.append(f"Invalid mode: '{mode}'. Must be one of: {VALID_MODES}")

    if "async" in config and not isinstance(config["async"], bool):
        errors.append("'async' must be true or false")

    halftone = dict(defaults or {})
    if "halftone" in config:
        if not isinstance(config["halftone"], dict):
            errors.append("'halftone' must be an object/dictionary")
        else:
            halftone.update(config["halftone"])

    palette_file = Path(_resolve_path(palette_name, config_dir))
    if halftone.get("gradientColors") is not None:
        try:
            halftone["gradientColors"] = resolve_gradient_colors(halftone["gradientColors"],
                                                                 palette_file)
        except ConfigValidationError as e:
            errors.append(str(e))
            halftone.pop("gradientColors")

    type_errors = check_option_types(halftone)
    errors.extend(type_errors)

    options = None
    if not type_errors:
        try:
            options = HalftoneOptions.from_dict(halftone)
        except (ValueError, TypeError) as e:
            errors.append(f"Invalid halftone options: {e}")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  • {e}" for e in errors)
        raise ConfigValidationError(error_msg)

    # URLs are fetched as-is; paths resolve relative to the config file
    if not is_url(config["input"]):
        config["input"] = _resolve_path(config["input"], config_dir)
        if not Path(config["input"]).exists():
            raise ConfigValidationError(f"Input file/directory not found: {config['input']}")
    if mode == "folder" and not Path(config["input"]).is_dir():
        raise ConfigValidationError(f"Folder mode needs an input directory: {config['input']}")
    config["output"] = _resolve_path(config["output"], config_dir)

    config.setdefault("mode", None)
    config.setdefault("async", False)
    config["halftone"] = halftone
    config["options"] = options

    return config


def load_config(config_path: Path, defaults: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Load and validate configuration from JSON file.

    Raises:
        ConfigValidationError: If loading or validation fails
    """
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigValidationError(f"Invalid JSON in config file:\n  Line {e.lineno}: {e.msg}")
    except OSError as e:
        raise ConfigValidationError(f"Failed to load config file: {e}")

    if not isinstance(config, dict):
        raise ConfigValidationError("Config file must contain a JSON object")

    return validate_config(config, config_path, defaults)


def detect_mode(input_value: str) -> str:
    """
    Auto-detect processing mode from the input.

    Returns:
        "image" for URLs and image files, "folder" for directories
    """
    if is_url(input_value):
        return "image"

    input_path = Path(input_value)
    if input_path.is_dir():
        return "folder"

    if validate_image_file(str(input_path)):
        return "image"
    raise ConfigValidationError(
        f"Cannot determine mode for file extension: {input_path.suffix.lower()}"
    )


# ==================== Rendering ====================

def render_one(source: str, options: HalftoneOptions, use_async: bool = False) -> HalftoneResult:
    """Render one source, through the async pipeline when requested."""
    if use_async:
        return asyncio.run(render_source_async(source, options))
    return render_source(source, options)


def save_result(result: HalftoneResult, output_path: Path):
    """Write the rendered halftone as PNG."""
    if output_path.suffix.lower() != '.png':
        logger.warning(f"Output [cyan]{output_path.name}[/] does not end in .png; writing PNG data")
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(result.to_png())


def process_single_image(config: Dict[str, Any],
                         preferences: Optional[ConfigManager] = None) -> bool:
    """
    Render a single image (file path or URL).

    Returns:
        True if successful, False otherwise
    """
    source = config["input"]
    output_path = Path(config["output"])
    options = config["options"]

    logger.info(f"Loading image: [cyan]{source}[/]")

    try:
        result = render_one(source, options, config["async"])
    except SourceUnavailableError as e:
        logger.error(f"Could not load source: {e}")
        return False
    except HalftoneError as e:
        logger.error(f"Failed to render halftone: {e}")
        return False

    meta = result.metadata
    logger.info(f"Source size: [cyan]{meta.original_width}x{meta.original_height}[/] "
                f"(scale {meta.scale_factor:.3f})")
    logger.info(f"[green]✓[/] Rendered {meta.rendered_width}x{meta.rendered_height}")

    try:
        save_result(result, output_path)
    except OSError as e:
        logger.error(f"Failed to save {output_path}: {e}")
        return False

    size_kb = output_path.stat().st_size / 1024
    logger.info(f"[bold green]✓ Image saved successfully![/] ({size_kb:.1f} KB)")

    if preferences is not None:
        if not is_url(source):
            preferences.update_last_path("image", source)
            preferences.add_recent_file(source)
        preferences.update_last_path("save", str(output_path))

    return True


def collect_folder_images(folder: Path) -> List[Path]:
    """Image files directly inside `folder`, sorted by name."""
    return sorted(p for p in folder.iterdir() if validate_image_file(str(p)))


def process_folder(config: Dict[str, Any],
                   preferences: Optional[ConfigManager] = None) -> bool:
    """
    Render every image in the input folder into the output folder as
    <stem>.png.

    Returns:
        True if every image succeeded
    """
    input_dir = Path(config["input"])
    output_dir = Path(config["output"])
    options = config["options"]

    images = collect_folder_images(input_dir)
    if not images:
        logger.error(f"No images found in [cyan]{input_dir}[/]")
        return False

    logger.info(f"Found [cyan]{len(images)}[/] images")
    failures = []

    with CLIProgressCallback(len(images)) as progress:
        for index, image_path in enumerate(images):
            progress.update(index, f"Rendering {image_path.name}")
            output_path = output_dir / f"{image_path.stem}.png"
            try:
                result = render_one(str(image_path), options, config["async"])
                save_result(result, output_path)
            except (SourceUnavailableError, HalftoneError, OSError) as e:
                logger.error(f"[red]✗[/] {image_path.name}: {e}")
                failures.append(image_path)
                continue
            logger.debug(f"[green]✓[/] {image_path.name} -> {output_path}")
        progress.finish()

    if preferences is not None:
        preferences.update_last_path("image", str(images[0]))
        preferences.update_last_path("save", str(output_dir / images[0].name))

    done = len(images) - len(failures)
    logger.info(f"[green]✓[/] Rendered {done}/{len(images)} images into [cyan]{output_dir}[/]")
    return not failures


def show_recent_files(preferences: ConfigManager):
    """List recently rendered sources and the last used folders."""
    recent = preferences.get_recent_files()
    if recent:
        console.print("[bold]Recent files:[/]")
        for path in recent:
            console.print(f"  • [cyan]{path}[/]")
    else:
        console.print("[dim]No recent files.[/]")

    for path_type in ("image", "save"):
        last = preferences.get_last_path(path_type)
        if last:
            console.print(f"Last {path_type} folder: [cyan]{last}[/]")


def show_banner():
    """Display application banner."""
    banner = """
[bold cyan]╔═══════════════════════════════════════╗[/]
[bold cyan]║[/]     [bold white]Halftone Pie CLI[/] [dim]- v1.0[/]        [bold cyan]║[/]
[bold cyan]║[/]  Halftone Dot Rendering Tool          [bold cyan]║[/]
[bold cyan]╚═══════════════════════════════════════╝[/]
"""
    console.print(banner)


def show_help():
    """Display detailed help information."""
    help_text = """
[bold cyan]Halftone Pie CLI - Usage[/]

[bold]Basic Usage:[/]
  halftone-pie <config.json>        Process with JSON config
  halftone-pie --help               Show this help
  halftone-pie --example-config     Generate example config

[bold]Options:[/]
  --verbose, -v     Enable verbose output
  --quiet, -q       Suppress all but error messages
  --log-file FILE   Write log to file
  --prefs FILE      Preferences file (default: ~/.halftone_pie.json)
  --recent          List recently rendered files and folders
  --clear-recent    Forget the recent files list

[bold]Config File Format:[/]
  JSON file specifying input (file, folder or https URL), output and
  halftone options. Use --example-config to generate a template.

[bold]Examples:[/]
  # Render a single image
  halftone-pie configs/portrait.json

  # Batch render a folder with verbose output
  halftone-pie -v configs/batch_folder.json
"""

    console.print(help_text)

    console.print("  [bold]Dot Shapes:[/]")
    for dot_type in DotType:
        console.print(f"    • [cyan]{dot_type.value}[/]")
    console.print("  [bold]Effects:[/]")
    for effect in EffectType:
        console.print(f"    • [cyan]{effect.value}[/]")
    console.print("  [bold]Color Modes:[/]")
    for mode in ColorMode:
        console.print(f"    • [cyan]{mode.value}[/]")

    console.print("\n  [bold]Halftone Options:[/]")
    for key, info in HalftoneOptions.get_parameter_info().items():
        console.print(f"    [cyan]{key}[/] ({info['type']}): {info['description']}")
    console.print()


def generate_example_config():
    """Generate and print an example configuration file."""
    halftone = {key: info['default']
                for key, info in HalftoneOptions.get_parameter_info().items()
                if info['default'] is not None}
    halftone["_comment_gradientColors"] = "List of colors or custom:<palette name> from palette.json"

    example = {
        "_comment": "Halftone Pie CLI Configuration",
        "input": "path/to/input.png",
        "output": "path/to/output.png",
        "mode": "image",
        "async": False,
        "halftone": halftone
    }

    example_json = json.dumps(example, indent=4)

    console.print("\n[bold cyan]Example Configuration:[/]\n")
    console.print(Panel(example_json, title="config.json", border_style="cyan"))
    console.print("\n[dim]Save this to a .json file and modify as needed.[/]\n")


def main(argv: Optional[List[str]] = None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Halftone Pie CLI - Halftone Dot Rendering Tool",
        add_help=False
    )

    parser.add_argument('config', nargs='?', help='Path to JSON configuration file')
    parser.add_argument('--help', '-h', action='store_true', help='Show help')
    parser.add_argument('--example-config', action='store_true', help='Generate example config')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose output')
    parser.add_argument('--quiet', '-q', action='store_true', help='Quiet mode (errors only)')
    parser.add_argument('--log-file', type=str, help='Log to file')
    parser.add_argument('--prefs', type=str, help='Preferences file')
    parser.add_argument('--recent', action='store_true', help='List recent files')
    parser.add_argument('--clear-recent', action='store_true', help='Clear recent files')

    args = parser.parse_args(argv)

    if args.help:
        show_banner()
        show_help()
        sys.exit(0)

    if args.example_config:
        show_banner()
        generate_example_config()
        sys.exit(0)

    if args.recent or args.clear_recent:
        preferences = ConfigManager(args.prefs)
        if args.clear_recent:
            preferences.clear_recent_files()
            preferences.save()
            console.print("[green]✓[/] Recent files cleared")
        else:
            show_recent_files(preferences)
        sys.exit(0)

    setup_logging(verbose=args.verbose, quiet=args.quiet, log_file=args.log_file)

    if not args.quiet:
        show_banner()

    if not args.config:
        console.print("[bold red]Error:[/] No configuration file specified.\n")
        console.print("Usage: halftone-pie <config.json>")
        console.print("       halftone-pie --help\n")
        sys.exit(1)

    config_path = Path(args.config)
    if not config_path.exists():
        logger.error(f"Configuration file not found: {config_path}")
        sys.exit(1)

    preferences = ConfigManager(args.prefs)

    logger.info(f"Loading configuration from: [cyan]{config_path}[/]")

    try:
        config = load_config(config_path, preferences.get_halftone_defaults())
    except ConfigValidationError as e:
        logger.error(f"[bold red]{e}[/]")
        sys.exit(1)

    logger.info("[green]✓[/] Configuration validated")

    if not config["mode"]:
        try:
            config["mode"] = detect_mode(config["input"])
            logger.info(f"Auto-detected mode: [cyan]{config['mode']}[/]")
        except ConfigValidationError as e:
            logger.error(f"{e}")
            sys.exit(1)

    options = config["options"]
    logger.info(f"Input:  [cyan]{config['input']}[/]")
    logger.info(f"Output: [cyan]{config['output']}[/]")
    logger.info(f"Mode:   [cyan]{config['mode']}[/]")
    logger.info(f"Dots: [yellow]{options.dot_type.value}[/] / [yellow]{options.effect_type.value}[/]")
    if options.color_mode == ColorMode.SOLID:
        logger.info(f"Color: [yellow]{options.color}[/]")
    else:
        logger.info(f"Color: [yellow]{options.color_mode.value}[/] ({options.gradient_angle:g}°)")
    if options.spacing is not None:
        logger.info(f"Spacing: [yellow]{options.spacing:g}[/] px")
    else:
        logger.info("Spacing: [dim]auto[/]")

    logger.info("")

    if config["mode"] == "image":
        success = process_single_image(config, preferences)
    else:
        success = process_folder(config, preferences)

    preferences.save()

    if success:
        logger.info("")
        logger.info("[bold green]✓ Processing complete![/]")
        sys.exit(0)
    else:
        logger.error("")
        logger.error("[bold red]✗ Processing failed![/]")
        sys.exit(1)


if __name__ == "__main__":
    main()
