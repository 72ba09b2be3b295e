"""
AIService 使用示例

展示按模型、按能力调用，以及查看限流和降级统计。
系统会自动跳过没有配置 API Key 的平台。

使用前复制 config.example.yaml 为 config.yaml 并设置环境变量，例如:
    export OPENAI_API_KEY=your_key
    export ANTHROPIC_API_KEY=your_key
"""

import asyncio
from pathlib import Path

from ai_service import (
    AIService,
    AIServiceError,
    CanonicalMessage,
    GenerationRequest,
    configure_logging,
)


def get_config_path() -> str:
    """获取配置文件路径"""
    possible_paths = [
        Path(__file__).parent.parent / "config.yaml",
        Path.cwd() / "config.yaml",
    ]
    for path in possible_paths:
        if path.exists():
            return str(path)

    raise FileNotFoundError("找不到 config.yaml 配置文件")


def show_available_models(service: AIService) -> None:
    print("\n可用模型 (按优先级):")
    print("=" * 60)
    for model in service.available_models():
        fallback = model.fallback_model_id or "-"
        capabilities = ", ".join(sorted(model.capabilities))
        print(f"  {model.id:<32} [{model.provider_name}] -> {fallback}  ({capabilities})")


async def ask(service: AIService, prompt: str, **kwargs) -> None:
    request = GenerationRequest(
        messages=[
            CanonicalMessage(role="system", content="Answer in one sentence."),
            CanonicalMessage(role="user", content=prompt),
        ],
        model_id=kwargs.pop("model_id", None),
    )
    print(f"\n{'=' * 60}")
    print(f"提示: {prompt}")
    print("-" * 60)
    try:
        result = await service.generate(request, subject_id="demo-user", **kwargs)
    except AIServiceError as e:
        print(f"❌ 调用失败 ({e.code}): {e}")
        print(f"   尝试次数: {e.attempts}, 尝试模型: {e.models_tried}")
        return

    print(f"模型: {result.model_id} ({result.provider})")
    print(f"回复: {result.content}")
    estimated = " (估算)" if result.usage_estimated else ""
    print(
        f"Token: {result.usage.prompt_tokens} + {result.usage.completion_tokens}"
        f" = {result.usage.total_tokens}{estimated}, 耗时 {result.latency_ms}ms"
    )


async def main() -> None:
    configure_logging(json_logs=False, log_level="INFO")

    async with AIService.from_config(config_path=get_config_path()) as service:
        show_available_models(service)

        await ask(service, "What is a token bucket?")
        await ask(service, "Latest news about open-source LLMs?", capability="search")
        await ask(service, "Summarize the CAP theorem.", model_id="claude-3-5-haiku-20241022", timeout=20)

        print("\n限流状态:")
        for model_id, status in service.rate_limit_status("demo-user").items():
            if status["used"]:
                print(f"  {model_id}: {status['used']}/{status['limit']}")

        print("\n降级统计:")
        print(service.fallback_stats())


if __name__ == "__main__":
    asyncio.run(main())
