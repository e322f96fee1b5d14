from autofetch.engine.engine import CHECK_TASK_NAME, AutoFetchEngine

__all__ = ["AutoFetchEngine", "CHECK_TASK_NAME"]
