from pydantic import BaseModel
from typing import Optional, List


class Source(BaseModel):
    quality: str = "auto"
    title: str
    url: str
    type: str = "hls"
    referer: str
    requiresSegmentProxy: bool = True
    status: str = "working"
    language: str = "en"
    server: str


class ExtractResponse(BaseModel):
    success: bool
    sources: List[Source] = []
    server: Optional[str] = None
    timestamp: str
    error: Optional[str] = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    type: Optional[str] = None
    server: Optional[str] = None
    timestamp: str


class HealthResponse(BaseModel):
    status: str
    wasmLoaded: bool
    serverTimeOffset: Optional[int] = None
    servers: List[str]
    timestamp: str
