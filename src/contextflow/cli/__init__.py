"""ContextFlow CLI。"""
