"""会话错误层级。

所有预期内的失败都是 BusinessError 的子类；会话入口（task_runner）
捕获后按 exit_code 退出，其余异常一律视为内部错误（退出码 1）。
"""


class BusinessError(Exception):
    """可报告给用户的错误。

    Attributes:
        code: 机器可读错误码（如 "PLAN_NOT_FOUND"）。
        message: 输出给用户的说明。
        http_status: 来自后端响应时的 HTTP 状态码。
        extra: 附加上下文（plan 路径、provider 等），只写入日志。
        exit_code: 进程退出码，子类覆盖。
    """

    exit_code = 1

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """连接失败或读超时。"""


class ApiError(BusinessError):
    """后端以非 2xx 状态拒绝请求。"""


class RateLimitError(BusinessError):
    """后端返回 429。本项目不做自动重试。"""


class ValidationError(BusinessError):
    """配置缺失或输入不合法。"""


class BackendError(BusinessError):
    """模型后端在流中显式返回的错误事件。"""


class ConversationOrderError(BusinessError):
    """工具结果与上一条 assistant 轮次中的调用请求不对应。"""


class PlanFileError(ValidationError):
    """dev-loop 计划文件缺失、不可读或格式不正确。"""


class FatalInputError(BusinessError):
    """无法处理的用户输入（未知命令、参数缺失等）。"""

    exit_code = 42


class FatalTurnLimitedError(BusinessError):
    """会话超过 max_session_turns。"""

    exit_code = 53


class FatalToolExecutionError(BusinessError):
    """不可恢复的工具错误（例如磁盘已满）。"""

    exit_code = 54


class FatalCancellationError(BusinessError):
    """用户中断。不是普通错误，但需要独立的退出码。"""

    exit_code = 130
