# Generated manually for E-Invoicing App - submission claims and poll rotation

from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ("einvoicing", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="invoice",
            name="last_polled_at",
            field=models.DateTimeField(
                blank=True,
                help_text="Last time the poller fetched this document, whatever the outcome",
                null=True,
            ),
        ),
        migrations.AddField(
            model_name="invoice",
            name="submission_claim",
            field=models.CharField(blank=True, max_length=32),
        ),
        migrations.AddField(
            model_name="invoice",
            name="submission_claimed_at",
            field=models.DateTimeField(blank=True, null=True),
        ),
        migrations.RemoveIndex(
            model_name="invoice",
            name="einv_tracked_idx",
        ),
        migrations.AddIndex(
            model_name="invoice",
            index=models.Index(
                condition=models.Q(("registry_document_id__isnull", False)),
                fields=["lifecycle_status", "last_polled_at"],
                name="einv_tracked_idx",
            ),
        ),
    ]
