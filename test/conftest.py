import os
import sys

# 测试不使用全局数据库引擎，需要数据库的用例各自在 tmp_path 下建库
os.environ.setdefault("DISABLE_DATABASE", "true")

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
