import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from userservice.application import create_event_channel
from userservice.config import load_settings
from userservice.database import Database
from userservice.events import UserEventPublisher
from userservice.models import NewUser
from userservice.users import UserAlreadyExistsError, UserService


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create a user through the lifecycle service")
    parser.add_argument("name", help="Display name for the user (1-25 characters)")
    parser.add_argument("email", help="Unique email address")
    parser.add_argument("age", type=int, help="Age in years (zero or more)")
    parser.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to the YAML configuration (defaults to USERSERVICE_CONFIG or config/userservice.yaml)",
    )
    return parser.parse_args()


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    args = parse_args()

    name = args.name.strip()
    email = args.email.strip().lower()
    if not name or len(name) > 25:
        print("Error: name must be between 1 and 25 characters.", file=sys.stderr)
        return 1
    if not email or len(email) > 50 or "@" not in email:
        print("Error: a valid email address of at most 50 characters is required.", file=sys.stderr)
        return 1
    if args.age < 0:
        print("Error: age must be positive or zero.", file=sys.stderr)
        return 1

    settings = load_settings(Path(args.config_path) if args.config_path else None)
    database = Database(settings.database_path)
    database.initialize()

    channel = create_event_channel(settings.events)
    publisher = UserEventPublisher(channel, topic=settings.events.topic, max_pending=settings.events.max_pending)
    publisher.start()
    try:
        service = UserService(database, publisher)
        try:
            user = service.create_user(NewUser(name=name, email=email, age=args.age))
        except UserAlreadyExistsError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
    finally:
        publisher.stop()
        close = getattr(channel, "close", None)
        if callable(close):
            close()

    print(f"Created user #{user.id}: {user.name} <{user.email}>")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
