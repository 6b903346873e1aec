"""
FastAPI application for the JQL Engine REST API.

Provides endpoints for:
- Converting, validating and executing JQL queries
- Running raw query DSL documents against allowed indexes
- Joining two indexes or saved queries in memory
- CRUD operations for managing saved queries
"""

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import Settings, load_settings, setup_logging
from .converter import JQLConverter
from .errors import (
    AccessDeniedError,
    InvalidRequestError,
    JoinConfigurationError,
    JQLEngineError,
    NoAccessibleIndexesError,
    QueryValidationError,
    SavedQueryNotFoundError,
    UpstreamSearchError,
)
from .join import JoinEngine
from .models import SOURCE_SAVED_QUERY, JoinedRecord, JoinSource, JoinSpec, JoinSummary
from .resolver import is_index_allowed
from .sources import ElasticsearchSearchClient, SearchClient, SearchResponse, SourceFetcher
from .storage import SavedQueryStorage


logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000


# Pydantic models for API requests/responses


class ValidationError(BaseModel):
    """Validation error details."""
    field: str
    message: str


class ValidationState(BaseModel):
    """Validation state of a JQL query."""
    is_valid: bool
    errors: List[ValidationError] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class JQLRequest(BaseModel):
    """Request carrying a JQL string."""
    jql: str = Field(..., description="JQL query string")


class ConvertResponse(BaseModel):
    """Elasticsearch translation of a JQL query."""
    query: Dict[str, Any]
    indexes: List[str]
    sort: Optional[List[Dict[str, Any]]] = None
    limit: Optional[int] = None


class ExecuteRequest(BaseModel):
    """Request to execute a JQL query."""
    jql: str = Field(..., description="JQL query string")
    start_at: int = Field(0, ge=0)
    max_results: int = Field(50, ge=1)
    fields: Optional[List[str]] = None


class Hit(BaseModel):
    """A single search hit."""
    id: Optional[str] = None
    index: Optional[str] = None
    score: Optional[float] = None
    source: Dict[str, Any] = Field(default_factory=dict)


class ExecuteResponse(BaseModel):
    """Response from query execution."""
    total: int
    start_at: int
    max_results: int
    indexes: List[str]
    hits: List[Hit]
    execution_time_ms: float


class DirectQueryRequest(BaseModel):
    """Request to run a raw query DSL document against one index."""
    model_config = ConfigDict(populate_by_name=True)

    index: str = Field(..., min_length=1, description="Index name or comma-separated names")
    query: Union[str, Dict[str, Any]] = Field(..., description="Query DSL object or its JSON text")
    from_: int = Field(0, ge=0, alias="from")
    size: int = Field(10, ge=1, le=MAX_PAGE_SIZE)
    source: Union[bool, List[str], None] = Field(None, alias="_source")


class DirectQueryResponse(BaseModel):
    """Response from a direct query."""
    model_config = ConfigDict(populate_by_name=True)

    index: str
    from_: int = Field(..., alias="from")
    size: int
    total: int
    took: Optional[int] = None
    hits: List[Hit]
    aggregations: Optional[Dict[str, Any]] = None
    execution_time_ms: float


class JoinSourceModel(BaseModel):
    """One side of a join."""
    type: str = Field(..., description="'index' or 'savedQuery'")
    id: str
    name: Optional[str] = None
    target_index: Optional[str] = None
    query: Optional[Dict[str, Any]] = None


class JoinConfig(BaseModel):
    """Configuration of one join."""
    left_source: JoinSourceModel
    right_source: JoinSourceModel
    left_field: str
    right_field: str
    join_type: str = "inner"
    limit: Optional[int] = None


class JoinRequest(BaseModel):
    """Request to execute a join."""
    model_config = ConfigDict(populate_by_name=True)

    joins: List[JoinConfig]
    from_: int = Field(0, ge=0, alias="from")
    size: int = Field(100, ge=1, le=MAX_PAGE_SIZE)


class JoinedRecordModel(BaseModel):
    """One joined record."""
    join_key: str
    match_kind: str
    consolidated_record: Dict[str, Any]
    left_record: Optional[Dict[str, Any]] = None
    right_record: Optional[Dict[str, Any]] = None


class JoinSummaryModel(BaseModel):
    """Join counters."""
    left_total: int
    right_total: int
    matched: int
    left_only: int
    right_only: int
    left_excluded: int
    right_excluded: int


class JoinResponse(BaseModel):
    """Response from a join."""
    took_ms: float
    total_results: int
    join_summary: JoinSummaryModel
    results: List[JoinedRecordModel]
    aggregations: Dict[str, Any]


class JoinPreviewResponse(BaseModel):
    """Response from a join preview."""
    preview: List[JoinedRecordModel]
    join_summary: JoinSummaryModel
    possible_matches: int
    sample_join_keys: Dict[str, int]


class SavedQueryCreate(BaseModel):
    """Request to create a saved query."""
    name: str = Field(..., description="Saved query name")
    description: str = ""
    jql: str = Field(..., description="JQL query string")
    target_index: Optional[str] = Field(None, description="Index to run against; resolved from the JQL when omitted")
    tags: List[str] = Field(default_factory=list)


class SavedQueryUpdate(BaseModel):
    """Request to update a saved query."""
    name: Optional[str] = None
    description: Optional[str] = None
    jql: Optional[str] = None
    target_index: Optional[str] = None
    tags: Optional[List[str]] = None


class SavedQuery(BaseModel):
    """A saved, pre-compiled query."""
    id: str
    name: str
    description: str = ""
    jql: str
    target_index: str
    query: Dict[str, Any]
    sort: Optional[List[Dict[str, Any]]] = None
    tags: List[str] = Field(default_factory=list)
    execution_count: int = 0
    last_executed_at: Optional[str] = None
    created_at: str
    updated_at: str


def _summary_model(summary: JoinSummary) -> JoinSummaryModel:
    return JoinSummaryModel(**summary.to_dict())


def _record_model(record: JoinedRecord) -> JoinedRecordModel:
    return JoinedRecordModel(**record.to_dict())


def _hits(response: SearchResponse) -> List[Hit]:
    return [
        Hit(
            id=hit.get("_id"),
            index=hit.get("_index"),
            score=hit.get("_score"),
            source=hit.get("_source") or {},
        )
        for hit in response.hits
    ]


def _execute_response(
    response: SearchResponse,
    start_at: int,
    max_results: int,
    indexes: List[str],
    start_time: float,
) -> ExecuteResponse:
    return ExecuteResponse(
        total=response.total,
        start_at=start_at,
        max_results=max_results,
        indexes=indexes,
        hits=_hits(response),
        execution_time_ms=(time.time() - start_time) * 1000,
    )


def create_app(
    settings: Optional[Settings] = None,
    search_client: Optional[SearchClient] = None,
    saved_queries: Optional[SavedQueryStorage] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Optional Settings (loaded from the environment when omitted)
        search_client: Optional search client (for testing)
        saved_queries: Optional SavedQueryStorage instance (for testing)

    Returns:
        Configured FastAPI app
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Logging is configured by the serving process, never on import
        setup_logging(settings.log_level, settings.log_file)
        yield

    app = FastAPI(
        title="JQL Engine API",
        description="REST API for JQL translation, execution and multi-index joins",
        version="1.0.0",
        lifespan=lifespan,
    )

    storage = saved_queries or SavedQueryStorage(settings.saved_queries_path)
    client = search_client or ElasticsearchSearchClient.from_settings(settings)
    converter = JQLConverter(settings.allowed_indexes, settings.project_index_mapping)
    join_engine = JoinEngine(SourceFetcher(client), settings.max_pairs_per_key)

    @app.exception_handler(JQLEngineError)
    async def engine_error_handler(request: Request, exc: JQLEngineError) -> JSONResponse:
        """Render engine errors as {code, message} pairs."""
        logger.warning(
            "%s %s failed with %s: %s",
            request.method, request.url.path, exc.code, exc.message,
        )
        error: Dict[str, Any] = exc.to_dict()
        if isinstance(exc, QueryValidationError):
            error["details"] = exc.errors
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": error})

    def search(index, query, **kwargs) -> SearchResponse:
        """Run a search, wrapping backend failures for the caller."""
        try:
            return client.search(index, query, **kwargs)
        except JQLEngineError:
            raise
        except Exception as e:
            raise UpstreamSearchError(str(e)) from e

    def compile_or_raise(jql: str):
        validation = converter.validate(jql)
        if not validation.is_valid:
            raise QueryValidationError(validation.errors)
        return converter.convert(jql)

    def resolve_target_index(requested: Optional[str], resolved: List[str]) -> str:
        if requested:
            for index in requested.split(","):
                if not is_index_allowed(index.strip(), settings.allowed_indexes):
                    raise AccessDeniedError(f"Access denied to index: {index.strip()}")
            return requested
        if not resolved:
            raise NoAccessibleIndexesError("No accessible indexes found for this query")
        return ",".join(resolved)

    def to_join_source(model: JoinSourceModel) -> JoinSource:
        """Build a join source, completing saved queries from storage."""
        if model.type == SOURCE_SAVED_QUERY and (model.query is None or model.target_index is None):
            source = storage.to_join_source(model.id)
            if model.name:
                source.name = model.name
            return source
        return JoinSource(
            type=model.type,
            id=model.id,
            name=model.name,
            target_index=model.target_index,
            query=model.query,
        )

    # API Routes

    @app.post("/api/query/convert", response_model=ConvertResponse)
    async def convert_query(request: JQLRequest) -> ConvertResponse:
        """Convert a JQL query into an Elasticsearch query."""
        compiled = compile_or_raise(request.jql)
        return ConvertResponse(
            query=compiled.query,
            indexes=compiled.indexes,
            sort=compiled.sort,
            limit=compiled.limit,
        )

    @app.post("/api/query/validate", response_model=ValidationState)
    async def validate_query(request: JQLRequest) -> ValidationState:
        """Validate a JQL query without executing it."""
        validation = converter.validate(request.jql)
        return ValidationState(
            is_valid=validation.is_valid,
            errors=[ValidationError(**error) for error in validation.errors],
            warnings=validation.warnings,
        )

    @app.post("/api/query/execute", response_model=ExecuteResponse)
    def execute_query(request: ExecuteRequest) -> ExecuteResponse:
        """Execute a JQL query and return one page of hits.

        Raises:
            QueryValidationError: If the JQL is invalid
            NoAccessibleIndexesError: If no permitted index remains
        """
        start_time = time.time()
        compiled = compile_or_raise(request.jql)

        if not compiled.indexes:
            raise NoAccessibleIndexesError("No accessible indexes found for this query")

        size = min(request.max_results, MAX_PAGE_SIZE)
        if compiled.limit is not None:
            size = min(size, compiled.limit)

        response = search(
            compiled.indexes,
            compiled.query,
            from_=request.start_at,
            size=size,
            sort=compiled.sort,
            source=request.fields or True,
        )

        logger.info(
            "Query executed: jql=%r indexes=%s total=%d returned=%d",
            request.jql, compiled.indexes, response.total, len(response.hits),
        )
        return _execute_response(
            response, request.start_at, request.max_results, compiled.indexes, start_time,
        )

    @app.post("/api/direct-query", response_model=DirectQueryResponse)
    def execute_direct_query(request: DirectQueryRequest) -> DirectQueryResponse:
        """Run a raw query DSL document against allowed indexes.

        Raises:
            InvalidRequestError: If a string query is not a JSON object
            AccessDeniedError: If an index is outside the allow-list
        """
        operation_id = uuid.uuid4().hex[:8]
        start_time = time.time()

        query = request.query
        if isinstance(query, str):
            try:
                query = json.loads(query)
            except json.JSONDecodeError as e:
                raise InvalidRequestError(f"Invalid JSON query format: {e}", code="INVALID_JSON") from e
            if not isinstance(query, dict):
                raise InvalidRequestError("Query must be a JSON object", code="INVALID_JSON")

        resolve_target_index(request.index, [])
        logger.info(
            "[DIRECT-QUERY-%s] Running query on %s (from=%d, size=%d)",
            operation_id, request.index, request.from_, request.size,
        )

        response = search(
            request.index,
            query,
            from_=request.from_,
            size=request.size,
            source=True if request.source is None else request.source,
        )

        execution_time_ms = (time.time() - start_time) * 1000
        logger.info(
            "[DIRECT-QUERY-%s] Completed in %.0fms: %d total hit(s)",
            operation_id, execution_time_ms, response.total,
        )
        return DirectQueryResponse(
            index=request.index,
            from_=request.from_,
            size=request.size,
            total=response.total,
            took=response.took,
            hits=_hits(response),
            aggregations=response.aggregations,
            execution_time_ms=execution_time_ms,
        )

    @app.get("/api/direct-query/indexes")
    async def list_allowed_indexes() -> Dict[str, Any]:
        """List the index names and patterns direct queries may target."""
        return {
            "indexes": list(settings.allowed_indexes),
            "count": len(settings.allowed_indexes),
        }

    @app.post("/api/multi-index-join", response_model=JoinResponse)
    def execute_join(request: JoinRequest) -> JoinResponse:
        """Execute a join between two sources.

        Raises:
            JoinConfigurationError: If the request is not exactly one valid join
        """
        operation_id = uuid.uuid4().hex[:8]
        logger.info(
            "[JOIN-CONTROLLER-%s] Received join request (joins=%d, from=%d, size=%d)",
            operation_id, len(request.joins), request.from_, request.size,
        )

        if len(request.joins) != 1:
            raise JoinConfigurationError(
                "Currently only single join operations are supported",
                code="UNSUPPORTED_JOIN_COUNT",
            )

        config = request.joins[0]
        spec = JoinSpec(
            left=to_join_source(config.left_source),
            right=to_join_source(config.right_source),
            left_field=config.left_field,
            right_field=config.right_field,
            join_type=config.join_type,
            limit=config.limit,
        )

        try:
            result = join_engine.execute(spec, from_=request.from_, size=request.size)
        except JQLEngineError:
            raise
        except Exception as e:
            raise UpstreamSearchError(str(e)) from e

        return JoinResponse(
            took_ms=result.took_ms,
            total_results=result.total_results,
            join_summary=_summary_model(result.summary),
            results=[_record_model(record) for record in result.results],
            aggregations={
                "join_field_distribution": result.distribution,
                "index_distribution": result.index_distribution,
            },
        )

    @app.get("/api/multi-index-join/preview", response_model=JoinPreviewResponse)
    def preview_join(
        left_index: str = Query(..., description="Name of the left index"),
        right_index: str = Query(..., description="Name of the right index"),
        left_field: str = Query(..., description="Join field in the left index"),
        right_field: str = Query(..., description="Join field in the right index"),
    ) -> JoinPreviewResponse:
        """Preview potential matches to help configure a join."""
        try:
            preview = join_engine.preview(left_index, right_index, left_field, right_field)
        except JQLEngineError:
            raise
        except Exception as e:
            raise UpstreamSearchError(str(e)) from e

        return JoinPreviewResponse(
            preview=[_record_model(record) for record in preview["preview"]],
            join_summary=_summary_model(preview["join_summary"]),
            possible_matches=preview["possible_matches"],
            sample_join_keys=preview["sample_join_keys"],
        )

    @app.get("/api/saved-queries", response_model=List[SavedQuery])
    async def list_saved_queries(
        target_index: Optional[str] = None,
        tag: Optional[str] = None,
    ) -> List[SavedQuery]:
        """Get saved queries, optionally filtered by index or tag."""
        return [SavedQuery(**query) for query in storage.get_all(target_index, tag)]

    @app.post("/api/saved-queries", response_model=SavedQuery)
    async def create_saved_query(request: SavedQueryCreate) -> SavedQuery:
        """Compile and save a JQL query.

        Raises:
            QueryValidationError: If the JQL is invalid
            AccessDeniedError: If the target index is not permitted
        """
        compiled = compile_or_raise(request.jql)
        target_index = resolve_target_index(request.target_index, compiled.indexes)

        query_data = {
            "id": str(uuid.uuid4()),
            "name": request.name,
            "description": request.description,
            "jql": request.jql,
            "target_index": target_index,
            "query": compiled.query,
            "sort": compiled.sort,
            "tags": request.tags,
        }
        return SavedQuery(**storage.create(query_data))

    @app.get("/api/saved-queries/{query_id}", response_model=SavedQuery)
    async def get_saved_query(query_id: str) -> SavedQuery:
        """Get a saved query by ID."""
        query = storage.get_by_id(query_id)
        if query is None:
            raise SavedQueryNotFoundError(f"Saved query '{query_id}' not found")
        return SavedQuery(**query)

    @app.put("/api/saved-queries/{query_id}", response_model=SavedQuery)
    async def update_saved_query(query_id: str, request: SavedQueryUpdate) -> SavedQuery:
        """Update a saved query, recompiling it when the JQL changes."""
        existing = storage.get_by_id(query_id)
        if existing is None:
            raise SavedQueryNotFoundError(f"Saved query '{query_id}' not found")

        updates: Dict[str, Any] = request.model_dump(exclude_none=True)

        if request.jql is not None:
            compiled = compile_or_raise(request.jql)
            updates["query"] = compiled.query
            updates["sort"] = compiled.sort
            if request.target_index is None:
                updates["target_index"] = resolve_target_index(None, compiled.indexes)

        if request.target_index is not None:
            updates["target_index"] = resolve_target_index(request.target_index, [])

        updated = storage.update(query_id, updates)
        if updated is None:
            raise SavedQueryNotFoundError(f"Saved query '{query_id}' not found")
        return SavedQuery(**updated)

    @app.delete("/api/saved-queries/{query_id}")
    async def delete_saved_query(query_id: str) -> Dict[str, str]:
        """Delete a saved query."""
        if not storage.delete(query_id):
            raise SavedQueryNotFoundError(f"Saved query '{query_id}' not found")
        return {"message": f"Saved query '{query_id}' deleted successfully"}

    @app.post("/api/saved-queries/{query_id}/execute", response_model=ExecuteResponse)
    def execute_saved_query(
        query_id: str,
        start_at: int = Query(0, ge=0),
        max_results: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    ) -> ExecuteResponse:
        """Run a saved query and record the execution."""
        start_time = time.time()
        query = storage.get_by_id(query_id)
        if query is None:
            raise SavedQueryNotFoundError(f"Saved query '{query_id}' not found")

        response = search(
            query["target_index"],
            query["query"],
            from_=start_at,
            size=max_results,
            sort=query.get("sort"),
        )
        storage.increment_execution_count(query_id)

        return _execute_response(
            response, start_at, max_results, query["target_index"].split(","), start_time,
        )

    @app.get("/health")
    def health_check() -> Dict[str, str]:
        """Health check endpoint."""
        try:
            search_status = "up" if client.ping() else "down"
        except Exception as e:
            logger.warning("Search backend ping failed: %s", e)
            search_status = "down"
        return {"status": "healthy", "search": search_status}

    return app


# Create the app instance
app = create_app()
