# Generated manually for E-Invoicing App - registry lifecycle tracking

import uuid

import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models

LIFECYCLE_CHOICES = [
    ("draft", "Draft"),
    ("submitted", "Submitted"),
    ("validated", "Validated"),
    ("validation_failed", "Validation Failed"),
    ("accepted", "Accepted"),
    ("rejected", "Rejected"),
    ("sent", "Sent"),
    ("received", "Received"),
    ("failed", "Failed"),
    ("cancelled", "Cancelled"),
]

SOURCE_CHOICES = [
    ("webhook", "Webhook"),
    ("poll", "Poll"),
    ("submission", "Submission"),
    ("user", "User"),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        # Merchant model
        migrations.CreateModel(
            name="Merchant",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=255)),
                ("tax_id", models.CharField(help_text="Tax/company identifier (TIN)", max_length=50)),
                (
                    "endpoint_id",
                    models.CharField(
                        db_index=True,
                        default="KHUID00000000",
                        help_text="Registry endpoint identifier",
                        max_length=50,
                    ),
                ),
                ("street", models.CharField(blank=True, max_length=255)),
                ("city", models.CharField(blank=True, max_length=100)),
                ("country", models.CharField(default="KH", max_length=2)),
                ("email", models.EmailField(blank=True, max_length=254)),
                ("phone", models.CharField(blank=True, max_length=50)),
                ("is_active", models.BooleanField(db_index=True, default=True)),
                (
                    "registration_status",
                    models.CharField(
                        choices=[("pending", "Pending"), ("active", "Active"), ("revoked", "Revoked")],
                        default="active",
                        max_length=20,
                    ),
                ),
                ("access_token", models.TextField(blank=True)),
                (
                    "last_synced_at",
                    models.DateTimeField(blank=True, help_text="Cursor for delta polling", null=True),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "einvoicing_merchant",
                "ordering": ("name",),
            },
        ),
        # Invoice model
        migrations.CreateModel(
            name="Invoice",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("uuid", models.UUIDField(default=uuid.uuid4, editable=False, unique=True)),
                ("invoice_number", models.CharField(db_index=True, max_length=100)),
                (
                    "document_kind",
                    models.CharField(
                        choices=[
                            ("invoice", "Invoice"),
                            ("credit_note", "Credit Note"),
                            ("debit_note", "Debit Note"),
                        ],
                        default="invoice",
                        max_length=20,
                    ),
                ),
                (
                    "direction",
                    models.CharField(
                        choices=[("outgoing", "Outgoing"), ("incoming", "Incoming")],
                        default="outgoing",
                        max_length=10,
                    ),
                ),
                (
                    "lifecycle_status",
                    models.CharField(choices=LIFECYCLE_CHOICES, db_index=True, default="draft", max_length=20),
                ),
                (
                    "registry_status",
                    models.CharField(
                        blank=True,
                        help_text="Raw status string last reported by the registry",
                        max_length=50,
                        null=True,
                    ),
                ),
                ("subtotal", models.DecimalField(decimal_places=2, default=0, max_digits=18)),
                ("tax_total", models.DecimalField(decimal_places=2, default=0, max_digits=18)),
                ("grand_total", models.DecimalField(decimal_places=2, default=0, max_digits=18)),
                ("currency", models.CharField(default="KHR", max_length=3)),
                ("issue_date", models.DateField()),
                ("due_date", models.DateField(blank=True, null=True)),
                ("customer_name", models.CharField(blank=True, max_length=255)),
                ("customer_tax_id", models.CharField(blank=True, max_length=50)),
                ("customer_street", models.CharField(blank=True, max_length=255)),
                ("customer_city", models.CharField(blank=True, max_length=100)),
                ("customer_country", models.CharField(default="KH", max_length=2)),
                ("customer_email", models.EmailField(blank=True, max_length=254)),
                ("customer_phone", models.CharField(blank=True, max_length=50)),
                ("customer_endpoint_id", models.CharField(blank=True, max_length=50)),
                ("original_invoice_number", models.CharField(blank=True, max_length=100)),
                ("original_invoice_uuid", models.CharField(blank=True, max_length=36)),
                ("original_invoice_issue_date", models.DateField(blank=True, null=True)),
                (
                    "registry_document_id",
                    models.CharField(blank=True, max_length=100, null=True, unique=True),
                ),
                ("verification_reference", models.CharField(blank=True, max_length=500)),
                ("rendered_document", models.TextField(blank=True, help_text="Last rendered UBL XML")),
                ("registry_response", models.JSONField(blank=True, default=dict)),
                ("validation_errors", models.JSONField(blank=True, default=list)),
                ("rejection_reason", models.TextField(blank=True)),
                ("submitted_at", models.DateTimeField(blank=True, null=True)),
                ("last_reconciled_at", models.DateTimeField(blank=True, null=True)),
                ("last_signal_source", models.CharField(blank=True, choices=SOURCE_CHOICES, max_length=20)),
                ("version", models.PositiveIntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "merchant",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="invoices",
                        to="einvoicing.merchant",
                    ),
                ),
                (
                    "original_invoice",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="adjustments",
                        to="einvoicing.invoice",
                    ),
                ),
            ],
            options={
                "db_table": "einvoicing_invoice",
                "ordering": ("-created_at",),
                "indexes": [
                    models.Index(
                        condition=models.Q(("registry_document_id__isnull", False)),
                        fields=["lifecycle_status", "last_reconciled_at"],
                        name="einv_tracked_idx",
                    ),
                    models.Index(fields=["merchant", "direction"], name="einv_merchant_dir_idx"),
                ],
            },
        ),
        # LineItem model
        migrations.CreateModel(
            name="LineItem",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("line_number", models.PositiveIntegerField()),
                ("item_name", models.CharField(max_length=255)),
                ("item_description", models.TextField(blank=True)),
                ("quantity", models.DecimalField(decimal_places=4, max_digits=18)),
                ("unit_price", models.DecimalField(decimal_places=2, max_digits=18)),
                (
                    "tax_rate",
                    models.DecimalField(decimal_places=2, default=0, help_text="Percent, e.g. 10", max_digits=5),
                ),
                (
                    "tax_category",
                    models.CharField(
                        choices=[("S", "Standard"), ("Z", "Zero"), ("E", "Exempt"), ("O", "Not Subject")],
                        default="S",
                        max_length=2,
                    ),
                ),
                ("line_total", models.DecimalField(decimal_places=2, default=0, max_digits=18)),
                ("tax_amount", models.DecimalField(decimal_places=2, default=0, max_digits=18)),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="lines",
                        to="einvoicing.invoice",
                    ),
                ),
            ],
            options={
                "db_table": "einvoicing_line_item",
                "ordering": ("line_number",),
                "constraints": [
                    models.UniqueConstraint(fields=("invoice", "line_number"), name="unique_line_number_per_invoice"),
                ],
            },
        ),
        # AuditEvent model (append-only)
        migrations.CreateModel(
            name="AuditEvent",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("action", models.CharField(db_index=True, max_length=50)),
                ("previous_status", models.CharField(blank=True, max_length=20)),
                ("new_status", models.CharField(blank=True, max_length=20)),
                ("source", models.CharField(choices=SOURCE_CHOICES, max_length=20)),
                ("detail", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="audit_events",
                        to="einvoicing.invoice",
                    ),
                ),
            ],
            options={
                "db_table": "einvoicing_audit_event",
                "ordering": ("created_at",),
                "indexes": [
                    models.Index(fields=["invoice", "created_at"], name="einv_audit_invoice_idx"),
                ],
            },
        ),
    ]
