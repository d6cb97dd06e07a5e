"""
配置加载器 - 支持YAML配置文件
"""
import os
import yaml
from typing import Dict, Any, Optional

from .core.agent_loop import AgentConfig
from .core.llm_client import LLMClient
from .core.workflow import PlanCatalog


def load_config(config_path: str = "config.yaml") -> Dict[str, Any]:
    """加载配置文件"""
    config = get_default_config()

    if os.path.exists(config_path):
        with open(config_path, 'r', encoding='utf-8') as f:
            user_config = yaml.safe_load(f)
            if user_config:
                # 合并配置
                config = deep_merge(config, user_config)

    # 从环境变量读取API密钥
    if not config['llm'].get('api_key'):
        provider = config['llm']['provider']
        if provider == 'gemini':
            config['llm']['api_key'] = os.getenv('GEMINI_API_KEY')
        elif provider == 'openai':
            config['llm']['api_key'] = os.getenv('OPENAI_API_KEY')

    # 展开路径中的 ~
    if config['logging'].get('file'):
        config['logging']['file'] = os.path.expanduser(config['logging']['file'])

    return config


def get_default_config() -> Dict[str, Any]:
    """获取默认配置"""
    return {
        'llm': {
            'provider': 'openai',
            'api_key': None,
            'max_context_tokens': 128000,
            'openai': {
                'model': 'gpt-4o-mini',
                'base_url': None
            },
            'gemini': {
                'model': 'gemini-2.0-flash',
                'base_url': 'https://generativelanguage.googleapis.com/v1beta/openai/'
            },
            'ollama': {
                'model': 'qwen2.5:7b',
                'base_url': 'http://localhost:11434/v1'
            }
        },
        'agent': {
            'max_iterations': 30,
            'max_consecutive_no_tool_calls': 3,
            'max_model_retries': 3,
            'temperature': 0.2,
            'max_output_tokens': 4096,
            'history_budget_ratio': 0.7,
            'snapshot_budget_ratio': 0.7,
            'recent_history_fallback': 5,
            'limited_context_threshold': 32000,
            'system_prompt_extra': ''
        },
        'human_input': {
            'timeout_seconds': 600,
            'poll_interval_seconds': 0.5
        },
        'logging': {
            'level': 'INFO',
            'file': None
        },
        'plans': {}
    }


def deep_merge(base: Dict, update: Dict) -> Dict:
    """深度合并两个字典"""
    result = base.copy()
    for key, value in update.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def save_config(config: Dict[str, Any], config_path: str = "config.yaml") -> None:
    """保存配置到文件"""
    with open(config_path, 'w', encoding='utf-8') as f:
        yaml.dump(config, f, default_flow_style=False, allow_unicode=True)


def build_agent_config(config: Dict[str, Any]) -> AgentConfig:
    """从完整配置组装 AgentConfig"""
    values = dict(config.get('agent') or {})
    human_input = config.get('human_input') or {}
    if 'timeout_seconds' in human_input:
        values['human_input_timeout'] = float(human_input['timeout_seconds'])
    if 'poll_interval_seconds' in human_input:
        values['human_input_poll_interval'] = float(human_input['poll_interval_seconds'])
    max_context = (config.get('llm') or {}).get('max_context_tokens')
    if max_context:
        values['max_context_tokens'] = int(max_context)
    return AgentConfig.from_dict(values)


def create_llm_client(config: Dict[str, Any]) -> Optional[LLMClient]:
    """创建 LLM 客户端；缺少API密钥时返回None（ollama除外）"""
    llm = config['llm']
    provider = llm['provider']
    provider_config = llm.get(provider) or {}
    api_key = llm.get('api_key')
    if not api_key and provider != 'ollama':
        return None
    return LLMClient(
        api_key=api_key,
        provider=provider,
        model=provider_config.get('model') or 'gpt-4o-mini',
        base_url=provider_config.get('base_url')
    )


def build_plan_catalog(config: Dict[str, Any]) -> PlanCatalog:
    return PlanCatalog.from_config(config.get('plans'))
