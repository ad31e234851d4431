from pydantic import BaseModel, Field, computed_field


class UsageRecord(BaseModel):
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    estimated_cost_usd: float = 0.0
    generation_time_ms: int | None = None
    breakdown: dict[str, "UsageRecord"] | None = None  # stage name -> stage usage

    @computed_field
    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "UsageRecord") -> "UsageRecord":
        times = [t for t in (self.generation_time_ms, other.generation_time_ms) if t is not None]
        return UsageRecord(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            estimated_cost_usd=self.estimated_cost_usd + other.estimated_cost_usd,
            generation_time_ms=sum(times) if times else None,
        )

    @classmethod
    def compose(cls, stages: dict[str, "UsageRecord"]) -> "UsageRecord":
        """Sum per-stage usage into one record that keeps the stage breakdown."""
        total = cls()
        for usage in stages.values():
            total = total + usage
        return total.model_copy(update={"breakdown": dict(stages)})


UsageRecord.model_rebuild()


class Completion(BaseModel):
    """Provider-neutral result of a model call or a whole pipeline."""

    content: str
    usage: UsageRecord
