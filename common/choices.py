from django.utils.translation import gettext_lazy as _
from django.db import models


class Provider(models.TextChoices):
    GOOGLE = 'google', _('Google')


class SyncTrigger(models.TextChoices):
    WEBHOOK = 'webhook', _('Webhook')
    CRON = 'cron', _('Scheduled')
    MANUAL = 'manual', _('Manual')
