# CLI モジュール
"""split-admin: 実験管理 CLI"""
