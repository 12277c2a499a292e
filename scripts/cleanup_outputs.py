#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from karaoke_api.config import get_settings
from karaoke_api.services.cleanup import cleanup_expired_outputs, empty_directory


def main() -> int:
    parser = argparse.ArgumentParser(description="Remove render temp frames and finished karaoke videos.")
    parser.add_argument(
        "--all",
        action="store_true",
        help="Empty the output directory as well (default: only expired outputs)",
    )
    parser.add_argument(
        "--ttl-seconds",
        type=int,
        default=None,
        help="Age after which outputs are removed (default: OUTPUT_TTL_SECONDS)",
    )
    parser.add_argument("--uploads", action="store_true", help="Also empty <PUBLIC_DIR>/uploads")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="[cleanup_outputs] %(levelname)s %(message)s")
    settings = get_settings()

    removed_temp = empty_directory(settings.render_temp_dir)
    logging.info("emptied %s (%s entries)", settings.render_temp_dir, removed_temp)

    if args.all:
        removed_out = empty_directory(settings.output_dir)
        logging.info("emptied %s (%s entries)", settings.output_dir, removed_out)
    else:
        ttl = settings.output_ttl_seconds if args.ttl_seconds is None else args.ttl_seconds
        removed_out = cleanup_expired_outputs(settings.output_dir, ttl)
        logging.info("removed %s expired outputs from %s", removed_out, settings.output_dir)

    if args.uploads:
        uploads_dir = settings.public_dir / "uploads"
        removed_uploads = empty_directory(uploads_dir)
        logging.info("emptied %s (%s entries)", uploads_dir, removed_uploads)
    return 0


if __name__ == "__main__":
    sys.exit(main())
