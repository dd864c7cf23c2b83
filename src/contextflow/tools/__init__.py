"""Tool 契约：ToolSpec、参数模型与结果封装。"""
