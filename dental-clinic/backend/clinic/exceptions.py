"""
统一异常体系。

所有业务异常继承 BaseAppException，包含：
- type:        错误类型标识（validation_error / rule_violation / not_found / block / conflict / integrity / unavailable）
- code:        业务错误码（DUPLICATE_PATIENT / XRAY_CONFLICT / DUPLICATE_CHECKOUT / ...）
- message:     人类可读的描述
- detail:      可选的附加信息（dict / list / None）
- http_status: HTTP 状态码

Repository 层只需 raise，exception_handler 统一捕获并格式化响应。

Conflicts (type='conflict' / 'block') are expected and frequent; they are logged
at INFO by the raising repository. Integrity errors (type='integrity') mean a
denormalized copy or precondition went missing and are logged at ERROR.
"""


class BaseAppException(Exception):
    """所有业务异常的基类。"""

    type = 'error'
    code = 'UNKNOWN_ERROR'
    http_status = 500

    def __init__(self, message, code=None, detail=None, http_status=None):
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.detail = detail
        super().__init__(message)


# ── 400 ────────────────────────────────────────────────────────────────────

class ValidationError(BaseAppException):
    """输入验证失败，400。"""

    type = 'validation_error'
    code = 'VALIDATION_ERROR'
    http_status = 400


class RuleViolation(BaseAppException):
    """业务规则前置条件不满足（折扣超过小计、复诊日期早于就诊日期…），400。"""

    type = 'rule_violation'
    code = 'RULE_VIOLATION'
    http_status = 400


class BillingRuleViolation(RuleViolation):
    code = 'BILLING_RULE_VIOLATION'


class FollowUpRuleViolation(RuleViolation):
    code = 'FOLLOWUP_RULE_VIOLATION'


class EstimationRuleViolation(RuleViolation):
    code = 'ESTIMATION_RULE_VIOLATION'


# ── 404 ────────────────────────────────────────────────────────────────────

class NotFoundError(BaseAppException):
    type = 'not_found'
    code = 'NOT_FOUND'
    http_status = 404


# ── 409 ────────────────────────────────────────────────────────────────────

class BlockError(BaseAppException):
    """业务规则阻止操作，409。"""

    type = 'block'
    code = 'BUSINESS_BLOCK'
    http_status = 409


class InvalidTransitionError(BlockError):
    """Visit 状态机不允许的迁移，或并发迁移中的失败方。"""

    code = 'INVALID_STATUS_TRANSITION'


class VisitNotDoneError(BlockError):
    code = 'VISIT_NOT_DONE'


class DoctorBusyError(BlockError):
    code = 'DOCTOR_BUSY'


class ReceptionNotesForbidden(BlockError):
    code = 'RECEPTION_NOTES_FORBIDDEN'
    http_status = 403


class ConditionalCheckFailed(BaseAppException):
    """A single conditional write did not hold. Subclasses say which kind."""

    type = 'conflict'
    code = 'CONDITIONAL_CHECK_FAILED'
    http_status = 409


class AlreadyExists(ConditionalCheckFailed):
    """PutIfAbsent 撞上已存在的 key。"""

    code = 'ALREADY_EXISTS'


class DuplicatePatientError(AlreadyExists):
    code = 'DUPLICATE_PATIENT'

    def __init__(self, message='A patient already exists with this name and phone number', **kwargs):
        super().__init__(message, **kwargs)


class XrayConflictError(AlreadyExists):
    code = 'XRAY_CONFLICT'


class DuplicateCheckoutError(AlreadyExists):
    code = 'DUPLICATE_CHECKOUT'


class ConcurrentUpdateError(ConditionalCheckFailed):
    """读到的快照在写入前一直被别的请求改掉，重新读取后仍未写成。"""

    code = 'CONCURRENT_UPDATE'


# ── 5xx ────────────────────────────────────────────────────────────────────

class PreconditionFailed(ConditionalCheckFailed):
    """
    UpdateIfMatches 的目标不存在或属性不匹配。

    正常流程里不应出现，出现即数据完整性问题，500。
    """

    type = 'integrity'
    code = 'PRECONDITION_FAILED'
    http_status = 500


class TransactionCanceled(BaseAppException):
    """
    TransactWrite 整体回滚。

    reasons 与提交的 operations 一一对应：'ConditionalCheckFailed' 或 None。
    Repository 必须把它归类成上面的某一种异常，不应直接冒泡到边界。
    """

    type = 'integrity'
    code = 'TRANSACTION_CANCELED'
    http_status = 500

    def __init__(self, reasons, message='Transaction cancelled', **kwargs):
        self.reasons = list(reasons)
        kwargs.setdefault('detail', {'reasons': self.reasons})
        super().__init__(message, **kwargs)

    @property
    def failed_indexes(self):
        return [i for i, reason in enumerate(self.reasons) if reason is not None]

    def failed(self, index):
        return index < len(self.reasons) and self.reasons[index] is not None


class StorageUnavailable(BaseAppException):
    """存储暂时不可用（网络 / 超时 / 乐观锁重试耗尽），重试有上限。"""

    type = 'unavailable'
    code = 'STORAGE_UNAVAILABLE'
    http_status = 503
