"""配置加载（pydantic-settings + YAML）。"""
