from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel

# =========================================
# JSON-RPC 2.0 ERROR CODES
# =========================================

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
AUTH_ERROR = -32000
RATE_LIMIT = -32001
FORBIDDEN = -32003
NOT_FOUND = -32004
INVALID_STATE = -32005
AI_VISIBILITY_DISABLED = -32006
SELF_TRADE = -32007

_HTTP_STATUS = {
    PARSE_ERROR: 400,
    INVALID_REQUEST: 400,
    METHOD_NOT_FOUND: 400,
    INVALID_PARAMS: 400,
    INTERNAL_ERROR: 500,
    AUTH_ERROR: 401,
    RATE_LIMIT: 429,
    FORBIDDEN: 403,
    NOT_FOUND: 404,
}

SERVER_NAME = "cardmarket-mcp"
SERVER_VERSION = "1.0.0"
PROTOCOL = "mcp/json-rpc-2.0"


class MCPError(Exception):
    def __init__(
        self,
        code: int,
        message: str,
        data: Any = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data
        self.status_code = status_code or _HTTP_STATUS.get(code, 400)


# =========================================
# ENVELOPE
# =========================================

def rpc_result(request_id, result: Any) -> dict:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def rpc_error(request_id, code: int, message: str, data: Any = None) -> dict:
    error = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": request_id, "error": error}


def parse_envelope(body: Any) -> Tuple[Any, str, dict]:
    if not isinstance(body, dict):
        raise MCPError(INVALID_REQUEST, "Invalid Request")

    request_id = body.get("id")
    if body.get("jsonrpc") != "2.0":
        raise MCPError(INVALID_REQUEST, "Invalid Request", data="jsonrpc must be \"2.0\"")

    method = body.get("method")
    if not isinstance(method, str) or not method:
        raise MCPError(INVALID_REQUEST, "Invalid Request", data="method is required")

    params = body.get("params")
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise MCPError(INVALID_PARAMS, "Invalid params", data="params must be an object")

    return request_id, method, params


# =========================================
# TOOL REGISTRY
# =========================================

Handler = Callable[..., Awaitable[Dict[str, Any]]]


class Tool:
    def __init__(
        self,
        name: str,
        description: str,
        endpoint: str,
        params_model: Type[BaseModel],
        handler: Handler,
        scopes: Optional[List[str]] = None,
        listed: bool = True,
    ):
        self.name = name
        self.description = description
        self.endpoint = endpoint
        self.params_model = params_model
        self.handler = handler
        self.scopes = scopes or []
        self.listed = listed

    def describe(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.params_model.model_json_schema(),
        }


class ToolRegistry:
    # Endpoints that dispatch any registered method
    OPEN_ENDPOINTS = {"", "server"}

    def __init__(self):
        self._tools: Dict[str, Tool] = {}

    def tool(
        self,
        name: str,
        *,
        description: str,
        endpoint: str,
        params: Type[BaseModel],
        scopes: Optional[List[str]] = None,
        listed: bool = True,
    ):
        def decorator(func: Handler) -> Handler:
            self._tools[name] = Tool(name, description, endpoint, params, func, scopes, listed)
            return func

        return decorator

    def resolve(self, method: str, endpoint: str = "") -> Tool:
        tool = self._tools.get(method)
        if not tool:
            raise MCPError(METHOD_NOT_FOUND, "Method not found")
        if endpoint not in self.OPEN_ENDPOINTS and tool.endpoint != endpoint:
            raise MCPError(METHOD_NOT_FOUND, "Method not found")
        return tool

    def endpoints(self) -> List[str]:
        return sorted({t.endpoint for t in self._tools.values()} | self.OPEN_ENDPOINTS - {""})

    def describe(self) -> List[dict]:
        return [t.describe() for t in self._tools.values() if t.listed]

    def __len__(self) -> int:
        return sum(1 for t in self._tools.values() if t.listed)


def server_info(tool_count: int) -> dict:
    return {
        "name": SERVER_NAME,
        "version": SERVER_VERSION,
        "protocol": PROTOCOL,
        "capabilities": {
            "tools": tool_count,
            "authentication": True,
            "rate_limiting": True,
            "ai_visibility_control": True,
        },
    }
