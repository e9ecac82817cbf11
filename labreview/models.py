import uuid
from django.db import models


class Patient(models.Model):
    """上游 patient 服务的本地镜像，这里只用到 gender（flagging 需要）。"""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    mrn = models.CharField(max_length=20, unique=True)
    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100)
    dob = models.DateField(blank=True, null=True)
    gender = models.CharField(max_length=20, blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'patients'


class OrderStatus(models.TextChoices):
    CREATED = 'created', 'Created'
    PENDING = 'pending', 'Pending'
    ONGOING = 'ongoing', 'Ongoing'
    REVIEWED_BY_AI = 'reviewed_by_ai', 'Reviewed By AI'
    COMPLETED = 'completed', 'Completed'
    CANCELLED = 'cancelled', 'Cancelled'


class Flag(models.TextChoices):
    LOW = 'Low', 'Low'
    NORMAL = 'Normal', 'Normal'
    HIGH = 'High', 'High'


class TestOrder(models.Model):
    # pytest 会把 Test 开头的类当测试收集
    __test__ = False

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order_code = models.CharField(max_length=50, blank=True, default='')
    test_type = models.CharField(max_length=50, blank=True, default='')
    patient = models.ForeignKey(Patient, on_delete=models.PROTECT, related_name='test_orders')
    status = models.CharField(max_length=20, choices=OrderStatus.choices, default=OrderStatus.CREATED)
    is_ai_review_enabled = models.BooleanField(default=False)
    is_deleted = models.BooleanField(default=False)
    deleted_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    ai_reviewed_at = models.DateTimeField(blank=True, null=True)
    completed_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        db_table = 'test_orders'


class TestResult(models.Model):
    __test__ = False

    test_order = models.ForeignKey(TestOrder, on_delete=models.CASCADE, related_name='results')
    message_id = models.CharField(max_length=100, db_index=True)
    test_code = models.CharField(max_length=50)
    parameter = models.CharField(max_length=100, blank=True, default='')
    value_numeric = models.FloatField(blank=True, null=True)
    value_text = models.CharField(max_length=200, blank=True, null=True)
    unit = models.CharField(max_length=50, blank=True, default='')
    reference_range = models.CharField(max_length=100, blank=True, default='')
    instrument = models.CharField(max_length=100, blank=True, default='')
    performed_date = models.DateTimeField()

    flag = models.CharField(max_length=10, choices=Flag.choices, default=Flag.NORMAL)
    flagged_at = models.DateTimeField(blank=True, null=True)
    # 可能被 AI verdict 覆盖成任意状态字符串，所以不限制 choices
    result_status = models.CharField(max_length=50, blank=True, default='')

    reviewed_by_ai = models.BooleanField(default=False)
    ai_reviewed_date = models.DateTimeField(blank=True, null=True)
    is_confirmed = models.BooleanField(default=False)
    confirmed_by_user_id = models.IntegerField(blank=True, null=True)
    confirmed_date = models.DateTimeField(blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'test_results'
        ordering = ['id']


class ProcessedMessage(models.Model):
    """Dedup ledger：message_id 唯一，作为「这次投递已经处理过」的凭证。"""

    STATE_PROVISIONAL = 'provisional'
    STATE_FINALIZED = 'finalized'
    STATE_CHOICES = [
        (STATE_PROVISIONAL, 'Provisional'),
        (STATE_FINALIZED, 'Finalized'),
    ]

    message_id = models.CharField(max_length=100, unique=True)
    source_system = models.CharField(max_length=50)
    test_order_id = models.UUIDField()
    state = models.CharField(max_length=20, choices=STATE_CHOICES, default=STATE_PROVISIONAL)
    processed_at = models.DateTimeField()
    created_count = models.IntegerField(default=0)

    class Meta:
        db_table = 'processed_messages'


class FlaggingConfig(models.Model):
    test_code = models.CharField(max_length=50)
    parameter_name = models.CharField(max_length=100)
    description = models.CharField(max_length=255, blank=True, default='')
    unit = models.CharField(max_length=50)
    # null = 不区分性别
    gender = models.CharField(max_length=20, blank=True, null=True)
    min = models.FloatField()
    max = models.FloatField()
    version = models.IntegerField(default=1)
    is_active = models.BooleanField(default=True)
    effective_date = models.DateTimeField()
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'flagging_configs'
        indexes = [models.Index(fields=['test_code', 'is_active'])]


class EventLog(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    event_id = models.CharField(max_length=20)
    action = models.CharField(max_length=100)
    message = models.TextField()
    operator_name = models.CharField(max_length=100)
    entity_type = models.CharField(max_length=50)
    entity_id = models.UUIDField()
    created_on = models.DateTimeField()

    class Meta:
        db_table = 'event_logs'
        ordering = ['created_on']


class RawBackup(models.Model):
    """队列原始消息备份，先落库再处理。"""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    raw_content = models.TextField()
    received_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'raw_backups'
