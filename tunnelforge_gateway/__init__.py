"""TunnelForge 网关：终端会话服务前的统一 HTTP 入口。"""
__version__ = "1.0.0"
