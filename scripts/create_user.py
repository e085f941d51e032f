import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from userservice.application import build_collaborators
from userservice.config import config_from_env, load_config
from userservice.errors import ConflictError, TransientIOError


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create a user record without going through the HTTP API")
    parser.add_argument("name", help="Display name for the user")
    parser.add_argument("email", help="Email address for the user")
    parser.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to the YAML configuration (defaults to USERSERVICE_CONFIG or config/service.yaml)",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()

    if args.config_path:
        config = config_from_env(base=load_config(Path(args.config_path).expanduser()))
    else:
        config = config_from_env()

    collaborators = build_collaborators(config)
    try:
        record = collaborators.pipeline().create(args.name, args.email)
    except (ConflictError, TransientIOError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        collaborators.close()

    print(f"Created user {record.id}: {record.name} <{record.email}>")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
