"""配置加载（embedded default YAML + overlays + env overrides）。"""
