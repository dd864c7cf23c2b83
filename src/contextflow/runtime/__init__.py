"""
stdio JSON-RPC runtime（MCP 兼容）。

说明：
- `framing`：消息分帧（line-delimited / Content-Length）
- `server`：方法派发与 tools/resources/prompts
"""
