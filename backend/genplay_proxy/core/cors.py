"""CORS 响应头

代理需要覆盖上游返回的 CORS 头，并在本地直接应答预检请求，
因此这里不使用 CORSMiddleware，而是显式构造响应头。
"""

ALLOWED_METHODS = "GET,POST,PUT,DELETE,OPTIONS"
ALLOWED_HEADERS = "Content-Type,Authorization,X-API-Key"
MAX_AGE = "86400"


def cors_headers(allowed_origin: str) -> dict[str, str]:
    return {
        "Access-Control-Allow-Origin": allowed_origin,
        "Access-Control-Allow-Methods": ALLOWED_METHODS,
        "Access-Control-Allow-Headers": ALLOWED_HEADERS,
        "Access-Control-Max-Age": MAX_AGE,
    }


def is_cors_header(name: str) -> bool:
    return name.lower().startswith("access-control-")
