"""
Shared — サービス間で共有するイベント駆動の基盤

エンベロープ、スキーマレジストリ、Outbox、冪等性ガード、
Dead Letter、コンシューマーループをまとめたライブラリ。
各サービスはこのパッケージだけを通してイベントをやり取りする。
"""
