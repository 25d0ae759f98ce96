"""全局测试配置：确保所有测试在测试模式下运行。"""

import os

# 在任何模块导入之前设置 TESTING 环境变量，
# 防止 paygate.main 生命周期启动插件目录监听任务。
os.environ["TESTING"] = "1"
