"""run registry 持久化与跨进程锁。"""
