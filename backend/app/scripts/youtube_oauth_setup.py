from __future__ import annotations

import argparse
import shutil
from pathlib import Path

from backend.app.config import load_settings
from backend.app.services.youtube_api import OAuthYouTubeClientProvider, YouTubeAuthError


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Connect a YouTube account to tubesync for one user.",
    )
    parser.add_argument(
        "--user-id",
        type=str,
        required=True,
        help="User the OAuth token is stored for (matches the X-User-ID header).",
    )
    parser.add_argument(
        "--client-secret",
        type=Path,
        default=None,
        help="Path to downloaded Google OAuth client secret JSON.",
    )
    return parser.parse_args()


def copy_client_secret_if_needed(source_path: Path, destination_path: Path) -> None:
    source = source_path.expanduser().resolve()
    if not source.exists():
        raise YouTubeAuthError(f"Client secret file does not exist: {source}")

    destination = destination_path.expanduser().resolve()
    destination.parent.mkdir(parents=True, exist_ok=True)

    if source == destination:
        return

    shutil.copy2(source, destination)


def main() -> None:
    args = _parse_args()
    settings = load_settings(validate_oauth_secrets=False)

    secret_path = settings.youtube_client_secret_path
    if args.client_secret is not None:
        copy_client_secret_if_needed(args.client_secret, secret_path)
        print(f"Client secret ready at: {secret_path}")
    else:
        print(f"Expecting client secret at: {secret_path}")

    provider = OAuthYouTubeClientProvider(
        token_dir=settings.youtube_token_dir,
        client_secret_path=secret_path,
    )
    token_path = provider.authorize(args.user_id)
    provider.get_client(args.user_id)
    print(f"OAuth success for user {args.user_id}. Token path: {token_path}")


if __name__ == "__main__":
    main()
