from pydantic import BaseModel, Field


class ActionRule(BaseModel):
    pathPattern: str
    apiPath: str


class ActionsManifest(BaseModel):
    rules: list[ActionRule]


class ActionDescriptor(BaseModel):
    title: str
    icon: str
    description: str
    label: str


class ActionPostRequest(BaseModel):
    account: str = Field(default="", max_length=64)


class ActionPostResponse(BaseModel):
    type: str = "transaction"
    transaction: str
    message: str


class PaymentWebhookRequest(BaseModel):
    signature: str = Field(default="", max_length=128)
    code: str | None = Field(default=None, max_length=32)


class PaymentWebhookResponse(BaseModel):
    code: str
    status: str


class ActionError(BaseModel):
    error: str
