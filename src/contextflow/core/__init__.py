"""核心契约、错误分类与查询算法。"""
