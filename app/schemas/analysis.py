from pydantic import BaseModel, ConfigDict, Field


class QuestionAnalysis(BaseModel):
    question: str
    sentiment: float = Field(ge=0, le=100)
    topics: list[str] = Field(default_factory=list)


class ConnectionAnalysis(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    summary: str
    sentiment_score: float = Field(alias="sentimentScore", ge=0, le=100)
    interaction_balance: float = Field(alias="interactionBalance", ge=0, le=100)
    topics: list[str] = Field(default_factory=list)
    key_takeaways: list[str] = Field(default_factory=list, alias="keyTakeaways")
    vibe_score: str = Field(alias="vibeScore")
    questions: list[QuestionAnalysis] = Field(default_factory=list)
