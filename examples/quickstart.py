"""Sandbridge quickstart: two tool calls orchestrated in one sandboxed script."""

import asyncio

from pydantic import BaseModel, Field

from sandbridge import ToolDefinition, ToolRegistry, ToolResult, register_tool_runner
from sandbridge.logging import configure_logging


class WeatherParams(BaseModel):
    city: str = Field(description="City name")


def get_weather(params, context):
    return ToolResult.json({"city": params["city"], "temp": 21})


async def main():
    configure_logging("INFO")
    registry = ToolRegistry()
    registry.register(ToolDefinition("get_weather", "Current weather for a city", WeatherParams, get_weather))
    runner = register_tool_runner(registry, {"mode": "micro-vm", "timeout": 5000})

    try:
        result = await runner.run({
            "language": "python",
            "code": (
                "cities = ['Oslo', 'Rome']\n"
                "temps = {}\n"
                "for city in cities:\n"
                "    temps[city] = getWeather(city=city)['temp']\n"
                "return temps\n"
            ),
        })
    finally:
        await runner.cleanup()

    print(f"Success: {result.success}")
    print(f"Result: {result.return_value}")


if __name__ == "__main__":
    asyncio.run(main())
