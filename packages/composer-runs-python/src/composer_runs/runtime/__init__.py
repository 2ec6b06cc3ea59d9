"""run 相关路径。"""
