from django.db import migrations, models
import django.db.models.deletion

import common.fields


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("calendars", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="WebhookChannel",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("channel_id", models.CharField(max_length=64, unique=True)),
                ("resource_id", models.CharField(max_length=255)),
                ("resource_uri", models.TextField(blank=True)),
                ("token", common.fields.EncryptedTextField()),
                ("expires_at", models.DateTimeField(blank=True, null=True)),
                ("handshake_received_at", models.DateTimeField(blank=True, null=True)),
                ("last_message_number", models.BigIntegerField(blank=True, null=True)),
                ("last_notified_at", models.DateTimeField(blank=True, null=True)),
                (
                    "calendar",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="webhook_channel",
                        to="calendars.calendar",
                    ),
                ),
            ],
            options={
                "ordering": ("expires_at",),
            },
        ),
    ]
