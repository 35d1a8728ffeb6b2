from __future__ import annotations

import argparse
import json
from typing import get_args

from backend.app.dependencies import get_components, get_settings
from backend.app.logging_config import configure_application_logging
from backend.app.services.sync_jobs import JobName


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one periodic sync job immediately.")
    parser.add_argument("job", choices=get_args(JobName), help="Job to run.")
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    configure_application_logging(get_settings())
    result = get_components().jobs.run(args.job)
    print(json.dumps(result.to_dict(), indent=2, default=str))
    if not result.success:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
