from issue_pipeline.watermark.store import (
    InMemoryWatermarkStore,
    JsonWatermarkStore,
    Watermark,
    WatermarkStore,
    create_watermark_store,
    initial_watermark,
)

__all__ = [
    "Watermark",
    "WatermarkStore",
    "InMemoryWatermarkStore",
    "JsonWatermarkStore",
    "create_watermark_store",
    "initial_watermark",
]
