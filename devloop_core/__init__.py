"""devloop_core 顶层包。

该包提供非交互式多轮 Agent 会话的核心实现：
流式 Provider 适配、工具调用循环、自动 dev-loop 验证重试、
会话级取消控制以及 text / json / stream-json 输出。
"""

from devloop_core.tasks import DevLoopPlan, run_non_interactive

__all__ = ["DevLoopPlan", "run_non_interactive"]
