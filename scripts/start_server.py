"""Launch the VISA bridge using the example configuration."""

from __future__ import annotations

from pathlib import Path
import sys

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from visa_bridge.__main__ import main as bridge_main  # type: ignore[import]


def main() -> int:
    config_path = PROJECT_ROOT / "config.example.yaml"
    return bridge_main(["--config", str(config_path), *sys.argv[1:]])


if __name__ == "__main__":
    sys.exit(main())
