"""工具数据结构定义。

这些 dataclass 描述了“工具调用”的 schema，用于将可用工具列表暴露给 LLM。
调用请求与结果本身（ToolCallRequest / ToolCallResult）属于会话片段，
定义在 devloop_core.domain.models。
"""

from dataclasses import dataclass
from typing import Any, Dict, List


@dataclass
class ToolParam:
    """单个工具参数的定义。"""

    name: str
    description: str
    required: bool
    schema: Dict[str, Any]


@dataclass
class ToolDef:
    """一个可供 LLM 调用的工具定义。"""

    name: str
    description: str
    params: Dict[str, ToolParam]

    def to_json_schema(self) -> Dict[str, Any]:
        """参数的 JSON Schema，两种 Provider 的工具声明共用。"""

        properties: Dict[str, Any] = {}
        required: List[str] = []
        for name, param in self.params.items():
            schema = param.schema or {"type": "string"}
            if param.description:
                schema = {**schema, "description": param.description}
            properties[name] = schema
            if param.required:
                required.append(name)
        return {
            "type": "object",
            "properties": properties,
            "required": required,
        }
