"""执行引擎核心：路径边界、截断、accelerator 发现、diff、命令执行与搜索。"""
