import asyncio

from core.initialization import load_configuration
from core.pipeline import TradingPipeline
from utils.config_validator import validate_config
from utils.logger import setup_logger


async def run_pipeline() -> None:
    """
    Entrypoint coroutine for the signal-to-execution pipeline.

    Loads and validates the configuration, configures a dedicated logger,
    wires every component and starts the recurring jobs.  Runs until
    cancelled; the scheduler, tracker tasks and venue session are shut down
    on the way out.
    """
    config = load_configuration()
    validate_config(config)

    logger = setup_logger("Pipeline", to_console=True)
    pipeline = TradingPipeline.from_config(config, logger=logger)

    await pipeline.start()
    try:
        await asyncio.Event().wait()
    finally:
        await pipeline.stop()


def main():
    try:
        asyncio.run(run_pipeline())
    except KeyboardInterrupt:
        print("👋 Pipeline stopped by user")
    except Exception as e:
        print(f"❌ Pipeline terminated due to error: {e}")


if __name__ == "__main__":
    main()
