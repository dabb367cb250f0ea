"""对外服务接口（ChatService）。"""
