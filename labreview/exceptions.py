"""
统一异常体系。

所有业务异常继承 BaseAppException，包含：
- type:        错误类型标识（validation_error / not_found / precondition_failed / upstream_failure / persistence_failure）
- code:        业务错误码（AI_REVIEW_DISABLED / NOTHING_TO_CONFIRM / ...）
- message:     人类可读的描述
- detail:      可选的附加信息（dict / list / None）
- http_status: HTTP 状态码

Service 层只需 raise，exception_handler 统一捕获并格式化响应。
重复投递（duplicate message）不是异常：ledger 直接返回上次的结果。
"""


class BaseAppException(Exception):
    """所有业务异常的基类。"""

    type = 'error'
    code = 'UNKNOWN_ERROR'
    http_status = 500
    retryable = False

    def __init__(self, message, code=None, detail=None, http_status=None):
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.detail = detail
        super().__init__(message)


class ValidationError(BaseAppException):
    """输入验证失败。400。"""

    type = 'validation_error'
    code = 'VALIDATION_ERROR'
    http_status = 400


class NotFoundError(BaseAppException):
    """Test order 不存在或已被软删除。404。"""

    type = 'not_found'
    code = 'TEST_ORDER_NOT_FOUND'
    http_status = 404


class PreconditionFailed(BaseAppException):
    """
    业务前置条件不满足。409。

    AI review 未开启、状态不对、没有结果、没有可确认的结果……
    与 NotFoundError 区分：对象存在，只是当前状态下不允许这个操作。
    """

    type = 'precondition_failed'
    code = 'PRECONDITION_FAILED'
    http_status = 409


class UpstreamFailure(BaseAppException):
    """
    外部服务（仓库 gateway / AI 打分服务）失败。502。

    remote status / body 放在 detail 里。
    retryable=True 表示超时、连接失败这类可以靠重投递恢复的错误。
    """

    type = 'upstream_failure'
    code = 'UPSTREAM_FAILURE'
    http_status = 502

    def __init__(self, message, code=None, detail=None, http_status=None, retryable=False):
        super().__init__(message, code=code, detail=detail, http_status=http_status)
        self.retryable = retryable


class PersistenceFailure(BaseAppException):
    """数据库写入失败。当前操作整体失败，队列消息不 ack。503。"""

    type = 'persistence_failure'
    code = 'PERSISTENCE_FAILURE'
    http_status = 503
    retryable = True
