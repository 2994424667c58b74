from django.db import models
from django.utils import timezone


class OrderModel(models.Model):
    """Schema owner for ``orders``; rows are read and written by ``OrderRepository``."""

    class Status(models.TextChoices):
        PENDING = "pending"
        PAID = "paid"
        PROCESSING = "processing"
        SHIPPED = "shipped"
        DELIVERED = "delivered"
        CANCELLED = "cancelled"
        FAILED = "failed"

    # UUID4 text; a CharField keeps the dashes on every backend
    id = models.CharField(primary_key=True, max_length=36)
    user_id = models.IntegerField()
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    shipping_address = models.JSONField()
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "orders"
        indexes = [
            models.Index(fields=["user_id", "-created_at"], name="orders_user_created_idx"),
            models.Index(fields=["status"], name="orders_status_idx"),
        ]


class OrderItemModel(models.Model):
    order = models.ForeignKey(OrderModel, on_delete=models.CASCADE, related_name="items")
    product_id = models.IntegerField()
    quantity = models.PositiveIntegerField()
    # Unit price captured at order time
    price = models.DecimalField(max_digits=12, decimal_places=2)

    class Meta:
        db_table = "order_items"
        constraints = [
            models.CheckConstraint(condition=models.Q(quantity__gt=0), name="order_items_quantity_positive"),
        ]


class IdempotencyKey(models.Model):
    # "<user_id>:<client key>"
    key = models.CharField(max_length=255, unique=True)
    request_hash = models.CharField(max_length=64)
    # 0 while the first request is still being processed
    response_status = models.PositiveSmallIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order_id = models.CharField(max_length=36, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
