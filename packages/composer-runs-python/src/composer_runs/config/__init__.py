"""配置加载（默认配置 + YAML overlays + 环境变量）。"""
