"""
xtest CLI

從本機同時控制本地瀏覽器與雲端瀏覽器，透過持久的控制通道與雲端服務同步。
"""

__version__ = "0.6.0"
