import os
from collections import defaultdict
from typing import Dict, Iterable, List

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError


class Command(BaseCommand):
    help = "Report presence of critical environment variables for calendar sync integrations."

    def add_arguments(self, parser):
        parser.add_argument(
            "--group",
            action="append",
            dest="groups",
            help="Only check the named group (repeatable), e.g. --group Push",
        )

    def handle(self, *args, **options):
        requirements = self._build_requirements()
        selected = {name.lower() for name in options.get("groups") or []}
        if selected:
            requirements = [req for req in requirements if str(req["group"]).lower() in selected]
            if not requirements:
                raise CommandError(f"Unknown group(s): {', '.join(sorted(selected))}")

        grouped: Dict[str, List[str]] = defaultdict(list)
        missing_required = False

        for requirement in requirements:
            group = requirement["group"]
            key = requirement["key"]
            note = requirement["note"]
            required_flag = self._is_required(requirement)
            value = os.environ.get(key)

            if required_flag and not value:
                missing_required = True
                grouped[group].append(self.style.ERROR(f"✗ {key}: missing ({note})"))
            elif value:
                grouped[group].append(self.style.SUCCESS(f"✓ {key}: set"))
            else:
                grouped[group].append(self.style.WARNING(f"• {key}: optional ({note})"))

        for group, lines in grouped.items():
            self.stdout.write("")
            self.stdout.write(self.style.MIGRATE_HEADING(group))
            for line in lines:
                self.stdout.write(f"  {line}")

        if missing_required:
            raise CommandError("Missing required environment variables. See messages above.")

        self.stdout.write("")
        self.stdout.write(self.style.SUCCESS("All required environment variables are set."))

    def _build_requirements(self) -> Iterable[Dict[str, object]]:
        return [
            {"group": "Core", "key": "SECRET_KEY", "note": "Django crypto key", "required": True},
            {
                "group": "Core",
                "key": "FIELD_ENCRYPTION_KEYS",
                "note": "Fernet keys for token columns (defaults to SECRET_KEY derived key)",
                "required": False,
            },
            {
                "group": "Database",
                "key": "DB_NAME",
                "note": "PostgreSQL database name (SQLite is used when unset)",
                "required": False,
            },
            {
                "group": "Database",
                "key": "DB_USER",
                "note": "Database username",
                "required": self._database_configured,
            },
            {
                "group": "Database",
                "key": "DB_PASSWORD",
                "note": "Database password",
                "required": self._database_configured,
            },
            {
                "group": "Google Calendar",
                "key": "GOOGLE_OAUTH_CLIENT_ID",
                "note": "OAuth client id for the calendar provider",
                "required": True,
            },
            {
                "group": "Google Calendar",
                "key": "GOOGLE_OAUTH_CLIENT_SECRET",
                "note": "OAuth client secret for the calendar provider",
                "required": True,
            },
            {
                "group": "Google Calendar",
                "key": "GOOGLE_OAUTH_REDIRECT_URI",
                "note": "Registered OAuth redirect endpoint",
                "required": False,
            },
            {
                "group": "Webhooks",
                "key": "WEBHOOK_CALLBACK_URL",
                "note": "Public HTTPS address receiving push notifications",
                "required": True,
            },
            {
                "group": "Push",
                "key": "PUSH_PROVIDER",
                "note": "console or expo",
                "required": False,
            },
            {
                "group": "Push",
                "key": "EXPO_ACCESS_TOKEN",
                "note": "Access token for the Expo push service",
                "required": self._expo_token_required,
            },
            {
                "group": "Caching",
                "key": "REDIS_URL",
                "note": "Redis URL for cache, sync locks & Celery broker",
                "required": False,
            },
        ]

    def _is_required(self, requirement: Dict[str, object]) -> bool:
        flag = requirement.get("required", False)
        if callable(flag):
            return bool(flag())
        return bool(flag)

    def _database_configured(self) -> bool:
        return bool(os.environ.get("DB_NAME"))

    def _expo_token_required(self) -> bool:
        return getattr(settings, "PUSH_PROVIDER", "console") == "expo"
