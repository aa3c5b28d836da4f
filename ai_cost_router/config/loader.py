"""
Configuration management and loading.

Builds the immutable routing policy, pricing table and alert thresholds
from a YAML file. Each section that is present replaces the matching
default table as a whole; absent sections keep the defaults.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Type

import yaml

from ..core.enums import ProviderId, ToolContext, UserRole
from ..core.policy import DEFAULT_POLICY, RoutingPolicy, ToolRoute
from ..core.pricing import DEFAULT_PRICING_TABLE, ModelPricing, PricingTable, ProviderPricing
from ..core.thresholds import CostThresholds, ThresholdPeriod


@dataclass(frozen=True)
class RouterConfig:
    """Complete router configuration."""
    policy: RoutingPolicy = DEFAULT_POLICY
    pricing: PricingTable = DEFAULT_PRICING_TABLE
    thresholds: CostThresholds = field(default_factory=CostThresholds)


ALLOWED_TOP_KEYS = {
    'permissions', 'tools', 'max_cost_per_request', 'fallback_chains', 'pricing', 'thresholds',
}


def load_router_config(path: str) -> RouterConfig:
    """Load and validate router configuration from YAML file.

    Validation is strict: unknown keys and unknown provider, tool or
    role names are rejected instead of being ignored.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated RouterConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Router config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    return parse_router_config(raw_config)


def parse_router_config(raw_config: Any) -> RouterConfig:
    """Validate an already-parsed configuration mapping."""
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    unknown_keys = set(raw_config.keys()) - ALLOWED_TOP_KEYS
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    defaults = DEFAULT_POLICY
    policy = RoutingPolicy(
        permissions=(
            _parse_permissions(raw_config['permissions'])
            if 'permissions' in raw_config else defaults.permissions
        ),
        tool_routes=(
            _parse_tools(raw_config['tools'])
            if 'tools' in raw_config else defaults.tool_routes
        ),
        max_cost_per_request=(
            _parse_max_costs(raw_config['max_cost_per_request'])
            if 'max_cost_per_request' in raw_config else defaults.max_cost_per_request
        ),
        fallback_chains=(
            _parse_fallback_chains(raw_config['fallback_chains'])
            if 'fallback_chains' in raw_config else defaults.fallback_chains
        ),
    )

    pricing = DEFAULT_PRICING_TABLE
    if 'pricing' in raw_config:
        pricing = _parse_pricing(raw_config['pricing'])

    thresholds = CostThresholds()
    if 'thresholds' in raw_config:
        thresholds = _parse_thresholds(raw_config['thresholds'])

    return RouterConfig(policy=policy, pricing=pricing, thresholds=thresholds)


def _enum_value(enum_cls: Type, value: Any, path: str):
    """Resolve a configured name to an enum member with a helpful error."""
    if isinstance(value, str):
        try:
            return enum_cls(value.lower())
        except ValueError:
            pass
    valid = [member.value for member in enum_cls]
    raise ValueError(f"{path} must be one of: {valid} (got {value!r})")


def _require_dict(data: Any, path: str) -> Dict:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    return data


def _require_list(data: Any, path: str) -> list:
    if not isinstance(data, list):
        raise ValueError(f"'{path}' must be a list")
    return data


def _parse_permissions(data: Any) -> Dict[UserRole, frozenset]:
    data = _require_dict(data, 'permissions')
    permissions = {}
    for role_name, tools in data.items():
        role = _enum_value(UserRole, role_name, "permissions role")
        tools = _require_list(tools, f"permissions.{role_name}")
        permissions[role] = frozenset(
            _enum_value(ToolContext, tool, f"permissions.{role_name} tool") for tool in tools
        )
    return permissions


def _parse_tools(data: Any) -> Dict[ToolContext, ToolRoute]:
    data = _require_dict(data, 'tools')
    allowed_keys = {'default', 'cost_optimized', 'fallback', 'transcription'}
    routes = {}
    for tool_name, route_data in data.items():
        tool = _enum_value(ToolContext, tool_name, "tools key")
        path = f"tools.{tool_name}"
        route_data = _require_dict(route_data, path)

        unknown_keys = set(route_data.keys()) - allowed_keys
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
        if route_data.get('default') is None:
            raise ValueError(f"Missing required 'default' in {path}")

        def provider(key):
            if route_data.get(key) is None:
                return None
            return _enum_value(ProviderId, route_data[key], f"{path}.{key}")

        routes[tool] = ToolRoute(
            default_provider=provider('default'),
            cost_optimized_provider=provider('cost_optimized'),
            fallback_provider=provider('fallback'),
            transcription_provider=provider('transcription'),
        )
    return routes


def _parse_max_costs(data: Any) -> Dict[ToolContext, Dict[UserRole, float]]:
    data = _require_dict(data, 'max_cost_per_request')
    caps = {}
    for tool_name, role_caps in data.items():
        tool = _enum_value(ToolContext, tool_name, "max_cost_per_request key")
        path = f"max_cost_per_request.{tool_name}"
        role_caps = _require_dict(role_caps, path)
        caps[tool] = {}
        for role_name, cap in role_caps.items():
            role = _enum_value(UserRole, role_name, f"{path} role")
            if isinstance(cap, bool) or not isinstance(cap, (int, float)) or cap < 0:
                raise ValueError(f"'{path}.{role_name}' must be a number >= 0")
            caps[tool][role] = float(cap)
    return caps


def _parse_fallback_chains(data: Any) -> Dict[ProviderId, tuple]:
    data = _require_dict(data, 'fallback_chains')
    chains = {}
    for provider_name, chain in data.items():
        provider = _enum_value(ProviderId, provider_name, "fallback_chains key")
        path = f"fallback_chains.{provider_name}"
        chain = _require_list(chain, path)
        chains[provider] = tuple(_enum_value(ProviderId, p, f"{path} entry") for p in chain)
    return chains


def _parse_price(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        price = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")
    if price < 0:
        raise ValueError(f"'{path}' must be >= 0")
    return price


def _parse_pricing(data: Any) -> PricingTable:
    data = _require_dict(data, 'pricing')
    providers = {}
    for provider_name, provider_data in data.items():
        provider = _enum_value(ProviderId, provider_name, "pricing key")
        path = f"pricing.{provider_name}"
        provider_data = _require_dict(provider_data, path)

        unknown_keys = set(provider_data.keys()) - {'default_model', 'models'}
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
        if 'default_model' not in provider_data:
            raise ValueError(f"Missing required 'default_model' in {path}")
        models_data = _require_dict(provider_data.get('models'), f"{path}.models")

        models = {}
        for model_name, prices in models_data.items():
            model_path = f"{path}.models.{model_name}"
            prices = _require_dict(prices, model_path)
            unknown_keys = set(prices.keys()) - {'input_per_1k', 'output_per_1k'}
            if unknown_keys:
                raise ValueError(f"Unknown keys in {model_path}: {unknown_keys}")
            for key in ('input_per_1k', 'output_per_1k'):
                if key not in prices:
                    raise ValueError(f"Missing required '{key}' in {model_path}")
            models[str(model_name)] = ModelPricing(
                input_cost_per_1k=_parse_price(prices['input_per_1k'], f"{model_path}.input_per_1k"),
                output_cost_per_1k=_parse_price(prices['output_per_1k'], f"{model_path}.output_per_1k"),
            )

        providers[provider] = ProviderPricing(
            default_model=str(provider_data['default_model']),
            models=models,
        )
    return PricingTable(providers)


def _parse_thresholds(data: Any) -> CostThresholds:
    data = _require_dict(data, 'thresholds')
    allowed_keys = {period.value for period in ThresholdPeriod}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown threshold keys: {unknown_keys}")

    values = {}
    for key, value in data.items():
        if value is None:
            values[key] = None
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ValueError(f"'thresholds.{key}' must be > 0")
        values[key] = float(value)
    return CostThresholds(**values)


def router_config_to_dict(config: RouterConfig) -> Dict[str, Any]:
    """Serialize a configuration into the mapping load_router_config accepts."""
    policy = config.policy
    tools = {}
    for tool, route in policy.tool_routes.items():
        entry = {'default': route.default_provider.value}
        for key, provider in (
            ('cost_optimized', route.cost_optimized_provider),
            ('fallback', route.fallback_provider),
            ('transcription', route.transcription_provider),
        ):
            if provider is not None:
                entry[key] = provider.value
        tools[tool.value] = entry

    return {
        'permissions': {
            role.value: sorted(tool.value for tool in tools_)
            for role, tools_ in policy.permissions.items()
        },
        'tools': tools,
        'max_cost_per_request': {
            tool.value: {role.value: cap for role, cap in caps.items()}
            for tool, caps in policy.max_cost_per_request.items()
        },
        'fallback_chains': {
            provider.value: [p.value for p in chain]
            for provider, chain in policy.fallback_chains.items()
        },
        'pricing': {
            provider: {
                'default_model': pricing.default_model,
                'models': {
                    model: {
                        'input_per_1k': str(prices.input_cost_per_1k),
                        'output_per_1k': str(prices.output_cost_per_1k),
                    }
                    for model, prices in pricing.models.items()
                },
            }
            for provider, pricing in config.pricing.providers.items()
        },
        'thresholds': {
            period.value: config.thresholds.for_period(period) for period in ThresholdPeriod
        },
    }
