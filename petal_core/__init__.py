"""Petal Core 顶层包。

该包提供本地/云端混合聊天助手的核心决策与组装层，
包括配置加载、领域模型、语义意图闸门（IntentGate）、
多后端适配（云端 API / 进程内推理 / 本地服务）、
流式组装器与对话编排器等能力。
"""

from petal_core.agents.orchestrator import Orchestrator, create_default_orchestrator

__all__ = ["Orchestrator", "create_default_orchestrator"]
