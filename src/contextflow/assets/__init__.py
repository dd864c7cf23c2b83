"""随 package 分发的资源文件（default.yaml）。"""
