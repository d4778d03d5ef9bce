import json
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional
from urllib.parse import parse_qs


@dataclass(frozen=True)
class ProxyRequest:
    """一次入站 HTTP 调用，生命周期仅限于单个请求/响应周期"""

    method: str
    path: str
    query: str = ""  # 原始查询字符串，原样转发
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""

    def query_param(self, name: str) -> Optional[str]:
        values = parse_qs(self.query, keep_blank_values=True).get(name)
        return values[0] if values else None


@dataclass
class ProxyResponse:
    """与运行形态无关的响应，由 FastAPI 或无服务器入口渲染

    headers 保存每个响应头的第一个值；同名头（如 Set-Cookie）的其余值按顺序放在 repeated_headers 中。
    """

    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    repeated_headers: list[tuple[str, str]] = field(default_factory=list)

    @classmethod
    def from_header_items(cls, status_code: int, items: Iterable[tuple[str, str]], body: bytes = b"") -> "ProxyResponse":
        response = cls(status_code=status_code, body=body)
        seen = {}
        for name, value in items:
            key = name.lower()
            if key in seen:
                response.repeated_headers.append((seen[key], value))
            else:
                seen[key] = name
                response.headers[name] = value
        return response

    def header_items(self) -> list[tuple[str, str]]:
        """包含重复值在内的全部响应头"""
        return list(self.headers.items()) + self.repeated_headers

    def multi_value_headers(self) -> dict[str, list[str]]:
        """仅包含有多个值的响应头"""
        grouped: dict[str, list[str]] = {}
        for name, value in self.repeated_headers:
            grouped.setdefault(name, [self.headers[name]]).append(value)
        return grouped

    @classmethod
    def json(cls, status_code: int, payload: Any, headers: Optional[dict[str, str]] = None) -> "ProxyResponse":
        merged = {"Content-Type": "application/json"}
        merged.update(headers or {})
        return cls(status_code=status_code, headers=merged, body=json.dumps(payload).encode("utf-8"))
