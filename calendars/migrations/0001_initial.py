from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("accounts", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Calendar",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("provider_calendar_id", models.CharField(max_length=255)),
                ("name", models.CharField(blank=True, max_length=255)),
                ("color", models.CharField(blank=True, max_length=32)),
                ("timezone", models.CharField(blank=True, max_length=64)),
                ("is_primary", models.BooleanField(default=False)),
                ("sync_enabled", models.BooleanField(default=True)),
                ("last_synced_at", models.DateTimeField(blank=True, null=True)),
                (
                    "account",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="calendars",
                        to="accounts.connectedaccount",
                    ),
                ),
            ],
            options={
                "ordering": ("-is_primary", "name"),
                "unique_together": {("account", "provider_calendar_id")},
            },
        ),
        migrations.CreateModel(
            name="Event",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("provider_event_id", models.CharField(max_length=255)),
                ("title", models.CharField(blank=True, max_length=500)),
                ("description", models.TextField(blank=True)),
                ("location", models.CharField(blank=True, max_length=500)),
                ("start", models.DateTimeField()),
                ("end", models.DateTimeField()),
                ("is_all_day", models.BooleanField(default=False)),
                (
                    "status",
                    models.CharField(
                        choices=[("confirmed", "Confirmed"), ("cancelled", "Cancelled")],
                        default="confirmed",
                        max_length=20,
                    ),
                ),
                ("provider_updated_at", models.DateTimeField(blank=True, null=True)),
                ("synced_at", models.DateTimeField(blank=True, null=True)),
                ("local_modified_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("reminder_sent_at", models.DateTimeField(blank=True, null=True)),
                (
                    "calendar",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="events",
                        to="calendars.calendar",
                    ),
                ),
            ],
            options={
                "ordering": ("start",),
                "unique_together": {("calendar", "provider_event_id")},
                "indexes": [
                    models.Index(fields=["calendar", "start"], name="event_calendar_start_idx"),
                    models.Index(fields=["status", "start"], name="event_status_start_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="SyncJob",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "trigger",
                    models.CharField(
                        choices=[("webhook", "Webhook"), ("cron", "Scheduled"), ("manual", "Manual")],
                        max_length=20,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("running", "Running"),
                            ("succeeded", "Succeeded"),
                            ("partial", "Partial"),
                            ("failed", "Failed"),
                            ("aborted", "Aborted"),
                            ("coalesced", "Coalesced"),
                        ],
                        default="running",
                        max_length=20,
                    ),
                ),
                ("calendars_updated", models.PositiveIntegerField(default=0)),
                ("events_upserted", models.PositiveIntegerField(default=0)),
                ("events_created", models.PositiveIntegerField(default=0)),
                ("events_updated", models.PositiveIntegerField(default=0)),
                ("events_cancelled", models.PositiveIntegerField(default=0)),
                ("conflicts", models.PositiveIntegerField(default=0)),
                ("errors", models.JSONField(blank=True, default=list)),
                ("started_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("finished_at", models.DateTimeField(blank=True, null=True)),
                (
                    "account",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="sync_jobs",
                        to="accounts.connectedaccount",
                    ),
                ),
            ],
            options={
                "ordering": ("-started_at",),
                "indexes": [
                    models.Index(fields=["account", "-started_at"], name="syncjob_account_started_idx"),
                ],
            },
        ),
    ]
