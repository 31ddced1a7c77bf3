#!/usr/bin/env python3
"""Set up localchat in a local virtual environment.

Usage:
    python install.py                  # install, create data dirs, check backends
    python install.py --dev            # editable install with pytest tools
    python install.py --skip-checks    # don't contact the provider or renderer
"""

import argparse
import platform
import shutil
import subprocess
import sys
from pathlib import Path

MIN_PYTHON = (3, 11)
PROJECT_DIR = Path(__file__).resolve().parent
CONFIG_FILES = [("config.example.yaml", "config.yaml"), (".env.example", ".env")]


def venv_paths(venv_dir: Path) -> tuple[Path, Path]:
    bin_dir = venv_dir / ("Scripts" if platform.system() == "Windows" else "bin")
    return bin_dir / "pip", bin_dir / "python"


def install_package(pip: Path, dev: bool) -> None:
    subprocess.check_call([str(pip), "install", "--upgrade", "pip"])
    target = ".[dev]" if dev else "."
    args = ["install", "-e", target] if dev else ["install", target]
    print(f"Installing localchat ({'editable, with test tools' if dev else 'release'})...")
    subprocess.check_call([str(pip), *args], cwd=PROJECT_DIR)


def prepare_data_dir() -> None:
    # generated images land here unless renderer.images_dir says otherwise
    images = PROJECT_DIR / "data" / "images"
    images.mkdir(parents=True, exist_ok=True)
    (PROJECT_DIR / "data" / ".gitkeep").touch()
    print(f"Image directory ready: {images.relative_to(PROJECT_DIR)}")


def copy_config_templates() -> None:
    for template, target in CONFIG_FILES:
        src, dst = PROJECT_DIR / template, PROJECT_DIR / target
        if dst.exists():
            print(f"{target} already exists, skipping.")
        elif src.exists():
            shutil.copy(src, dst)
            print(f"Created {target} from {template}")


def check_backends(python_exe: Path) -> bool:
    """Validate config.yaml, then report provider and renderer reachability."""
    run = [str(python_exe), "-m", "localchat"]
    if subprocess.call([*run, "config-check"], cwd=PROJECT_DIR) != 0:
        print("config.yaml is invalid; fix it before starting a chat.")
        return False
    # model-info never fails on an unreachable backend; it prints Available: False
    subprocess.call([*run, "model-info"], cwd=PROJECT_DIR)
    return True


def main() -> None:
    parser = argparse.ArgumentParser(description="Install localchat")
    parser.add_argument("--dev", action="store_true", help="Editable install with test tools")
    parser.add_argument(
        "--skip-checks", action="store_true", help="Skip the config and backend checks"
    )
    args = parser.parse_args()

    if sys.version_info < MIN_PYTHON:
        sys.exit(
            f"Error: Python {MIN_PYTHON[0]}.{MIN_PYTHON[1]}+ is required. "
            f"You have {sys.version_info.major}.{sys.version_info.minor}."
        )

    venv_dir = PROJECT_DIR / ".venv"
    if not venv_dir.is_dir():
        print("Creating virtual environment...")
        subprocess.check_call([sys.executable, "-m", "venv", str(venv_dir)])
    pip, python_exe = venv_paths(venv_dir)

    install_package(pip, args.dev)
    prepare_data_dir()
    copy_config_templates()

    config_ok = True
    if not args.skip_checks:
        print("\nChecking configuration and backends...")
        config_ok = check_backends(python_exe)

    activate = (
        r".\.venv\Scripts\activate" if platform.system() == "Windows" else "source .venv/bin/activate"
    )
    print()
    print("localchat is installed." if config_ok else "localchat is installed, config needs attention.")
    print(f"  Activate:          {activate}")
    print("  Provider / model:  edit provider.base_url and provider.default_model in config.yaml")
    print("  Images:            set renderer.enabled: true; SD_API_USER / SD_API_PASSWORD in .env")
    print("                     if your Forge/A1111 API requires them")
    print("  Chat:              python -m localchat chat")
    if args.dev:
        print("  Tests:             pytest")


if __name__ == "__main__":
    main()
