"""
Pydantic schemas for bulk review jobs.

The persisted job config is a category-tagged variant: the ``category`` field
selects the model, and every variant carries the full ordered item list plus
the batching parameters needed to replay the job after a restart.
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field, TypeAdapter


Category = Literal["game", "movie", "series", "hardware", "product"]
CATEGORIES = ("game", "movie", "series", "hardware", "product")
PublishStatus = Literal["draft", "published"]


class QueueItemIn(BaseModel):
    """One unit of work: a catalog entry or a free-form product name"""
    name: str = Field(..., min_length=1, max_length=500)
    external_ref: Optional[int] = Field(None, description="Upstream catalog id (IGDB/TMDB)")


class BatchSettings(BaseModel):
    batch_size: int = Field(5, ge=1, le=100)
    delay_between_batches_ms: int = Field(3000, ge=0)
    delay_between_items_ms: int = Field(2000, ge=0)
    status: PublishStatus = "draft"
    skip_existing: bool = True
    max_retries: int = Field(3, ge=1, le=10)


# ========== Persisted job config (tagged by category) ==========
class _JobConfigBase(BatchSettings):
    items: List[QueueItemIn] = Field(..., min_length=1)


class _CatalogJobConfig(_JobConfigBase):
    """Items resolved from an external catalog; keeps the query for reference"""
    query_options: Dict[str, Any] = Field(default_factory=dict)


class GameJobConfig(_CatalogJobConfig):
    category: Literal["game"] = "game"


class MovieJobConfig(_CatalogJobConfig):
    category: Literal["movie"] = "movie"


class SeriesJobConfig(_CatalogJobConfig):
    category: Literal["series"] = "series"


class HardwareJobConfig(_JobConfigBase):
    category: Literal["hardware"] = "hardware"


class ProductJobConfig(_JobConfigBase):
    category: Literal["product"] = "product"


JobConfig = Annotated[
    Union[GameJobConfig, MovieJobConfig, SeriesJobConfig, HardwareJobConfig, ProductJobConfig],
    Field(discriminator="category"),
]

job_config_adapter: TypeAdapter = TypeAdapter(JobConfig)


def parse_job_config(raw: Any):
    """Validate a persisted config blob into its category variant"""
    return job_config_adapter.validate_python(raw)


# ========== API ==========
class BulkJobRequest(BaseModel):
    """Submission body. Items come from `items`, `names`, or the category's item source."""
    category: Category
    count: Optional[int] = Field(None, ge=1, le=5000)
    items: Optional[List[QueueItemIn]] = None
    names: Optional[List[str]] = None
    query_options: Dict[str, Any] = Field(default_factory=dict)

    # Unset values fall back to the configured defaults
    batch_size: Optional[int] = Field(None, ge=1, le=100)
    delay_between_batches_ms: Optional[int] = Field(None, ge=0)
    delay_between_items_ms: Optional[int] = Field(None, ge=0)
    status: PublishStatus = "draft"
    skip_existing: bool = True
    max_retries: Optional[int] = Field(None, ge=1, le=10)


class SubmitResponse(BaseModel):
    message: str = "Job started"
    job_id: str
    total: int
    category: Category
