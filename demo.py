import asyncio
import os
import random
from loguru import logger
from keypool.presets.gemini import GeminiPool
from keypool.core.types import ExecuteOptions

logger.add("demo_output.log", format="{time} {level} {message}", level="DEBUG")

class MockError(Exception):
    def __init__(self, status):
        super().__init__(f"HTTP {status}")
        self.status = status

async def mock_llm_call(key):
    logger.debug(f"Simulating LLM call with key: ...{key[-4:]}")
    await asyncio.sleep(0.1) # Simulate network latency
    if key == "demo-key-2" and random.random() < 0.5:
        logger.warning("Simulating 429 Too Many Requests on demo-key-2")
        raise MockError(429)

    return {"text": f"Response generated using ...{key[-4:]}", "tokens": random.randint(100, 2000)}

async def main():
    os.environ["GEMINI_API_KEY"] = "demo-key-1,demo-key-2,demo-key-3"

    result = GeminiPool.get_instance({'persist': False})
    if not result.success:
        logger.error(f"Failed to initialize: {result.error}")
        return

    preset = result.data
    preset.pool.calculate_backoff = lambda attempt: 50

    async def run_task(task_id):
        try:
            response = await preset.execute(
                mock_llm_call,
                ExecuteOptions(maxRetries=3, rotate=True),
                cost_fn=lambda r: r["tokens"]
            )
            logger.success(f"Task {task_id} completed: {response['text']}")
        except Exception as e:
            logger.error(f"Task {task_id} failed: {e}")

    logger.info("Starting 10 concurrent requests...")
    await asyncio.gather(*[run_task(i) for i in range(10)])

    logger.info("Requests completed. Pool state:")
    for row in preset.pool.usage_report():
        logger.info(f"Key: {row['apiKey']} | RPM: {row['rpmUsage']} | Cost: {row['costUsage']} | Errors: {row['errorCount']} | Active: {row['isActive']}")

if __name__ == "__main__":
    asyncio.run(main())
