"""核心契约、错误、PTY spawner、log sink 与 liveness。"""
