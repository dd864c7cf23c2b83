"""共享文件状态：record log / lock / read cache / session index / active session。"""
