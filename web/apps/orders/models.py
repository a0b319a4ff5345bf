import uuid
from django.db import models, transaction
from django.db.models import F, Q


class OrderSequence(models.Model):
    """Named counter handing out ``OrderModel.internal_id`` values.

    The increment is a single ``UPDATE ... SET last_value = last_value + 1``,
    so concurrent callers queue on the counter row and each reads back its
    own value; the row lock is held until the caller's transaction ends.
    """

    name = models.CharField(max_length=32, primary_key=True)
    last_value = models.BigIntegerField(default=0)

    class Meta:
        db_table = "order_sequences"

    @classmethod
    def next_value(cls, name: str) -> int:
        with transaction.atomic():
            # get_or_create falls back to a read when a concurrent first call wins the insert
            cls.objects.get_or_create(name=name)
            cls.objects.filter(name=name).update(last_value=F("last_value") + 1)
            return cls.objects.values_list("last_value", flat=True).get(name=name)


class OrderModel(models.Model):
    # UUID PK exposed in the API; also the stock reservation key
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Internal incremental counter
    internal_id = models.BigIntegerField(unique=True, editable=False, null=True)

    class Status(models.TextChoices):
        PENDING = "pending"
        CONFIRMED = "confirmed"
        PROCESSING = "processing"
        SHIPPED = "shipped"
        DELIVERED = "delivered"
        CANCELLED = "cancelled"

    class PaymentMethod(models.TextChoices):
        ONLINE = "online"
        COD = "cod"

    class ReservationState(models.TextChoices):
        HELD = "held"
        RELEASED = "released"
        COMMITTED = "committed"

    user_id = models.CharField(max_length=64, db_index=True)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING, db_index=True)
    payment_method = models.CharField(max_length=8, choices=PaymentMethod.choices)
    reservation_state = models.CharField(
        max_length=16, choices=ReservationState.choices, default=ReservationState.HELD
    )
    shipping_address = models.JSONField(default=dict)

    subtotal_cents = models.PositiveIntegerField(default=0)
    shipping_cents = models.PositiveIntegerField(default=0)
    total_cents = models.PositiveIntegerField(default=0)
    amount_paid_cents = models.PositiveIntegerField(default=0)
    amount_due_cents = models.PositiveIntegerField(default=0)
    currency = models.CharField(max_length=3, default="INR")

    gateway_order_id = models.CharField(max_length=64, null=True, blank=True, db_index=True)
    gateway_amount_cents = models.PositiveIntegerField(null=True, blank=True)
    payment_id = models.CharField(max_length=64, null=True, blank=True)
    payment_signature = models.CharField(max_length=128, null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "orders"
        ordering = ["-internal_id"]
        constraints = [
            models.CheckConstraint(
                condition=Q(total_cents=F("subtotal_cents") + F("shipping_cents")),
                name="orders_total_is_subtotal_plus_shipping",
            ),
            models.CheckConstraint(
                condition=Q(total_cents=F("amount_paid_cents") + F("amount_due_cents")),
                name="orders_paid_plus_due_is_total",
            ),
        ]

    def save(self, *args, **kwargs):
        # Assign incremental `internal_id` only on creation
        if self.internal_id is None:
            self.internal_id = OrderSequence.next_value("orders")
        super().save(*args, **kwargs)


class OrderLineModel(models.Model):
    """Price/size snapshot of one purchased line; written once with its order."""

    order = models.ForeignKey(OrderModel, related_name="lines", on_delete=models.PROTECT)
    product_id = models.CharField(max_length=64)
    product_name = models.CharField(max_length=200)
    size = models.PositiveSmallIntegerField()
    quantity = models.PositiveIntegerField()
    unit_price_cents = models.PositiveIntegerField()

    class Meta:
        db_table = "order_lines"
        ordering = ["id"]


class IdempotencyKey(models.Model):
    key = models.CharField(max_length=200, primary_key=True)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveSmallIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order_id = models.UUIDField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
