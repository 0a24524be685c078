"""命令行入口（`coding-executor`）。"""
