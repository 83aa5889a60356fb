from pydantic import BaseModel, Field


class AssignmentModel(BaseModel):
    """A visitor's variant for one experiment."""

    experiment: str
    variant: str = Field(..., description="The label of the variant the visitor was assigned.")
    persisted: bool = Field(
        ..., description="False when the variant only holds for the current page view."
    )
