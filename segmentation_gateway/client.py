"""
client.py - Async client for the remote segmentation service.

Lifecycle of one job:

    start_segmentation()   anonymise + zip + POST   -> JobHandle
    check_status()         GET results              -> InProgress | Complete
                                                       | NotFound | TransportFailure
    poll()                 check_status(), raising for NotFound / TransportFailure
    segmentation_result()  poll() and deanonymise a completed result

Complete, NotFound and TransportFailure are terminal.  Polling one job
from several tasks at once is not supported.

Usage
-----
    async with SegmentationClient.from_config() as client:
        await client.ping()
        handle, _ = await client.start_segmentation("model-1", [ChannelData("ct", datasets)])
        outcome = await client.wait_for_segmentation(handle, datasets)
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, ClassVar, Iterable, Mapping, Optional, Union

import httpx
from pydicom.dataset import Dataset
from pydicom.tag import BaseTag

from segmentation_gateway.anonymizer import AnonymisationEngine
from segmentation_gateway.archive import ChannelData, compress_channels, read_single_dataset
from segmentation_gateway.config import CONFIG
from segmentation_gateway.deanonymizer import restore_dataset
from segmentation_gateway.errors import (
    EmptyChannelError,
    InvalidCredentialError,
    InvalidRequestError,
    JobNotFoundError,
    MissingArgumentError,
    PollLimitError,
    ServiceError,
    TransportError,
)
from segmentation_gateway.protocol import (
    SEGMENTATION_PROTOCOL_ID,
    AnonymisationProtocol,
    parse_protocol,
    protocol_from_config,
)
from segmentation_gateway.tags import DEFAULT_REGISTRY, TOP_LEVEL_REPLACEMENTS, TagReplacement
from segmentation_gateway.transport import TransportResources

logger = logging.getLogger(__name__)

AUTH_HEADER_NAME = "API_AUTH_SECRET"

# The service does not report finer-grained progress than this.
IN_PROGRESS_PERCENT = 50
COMPLETE_PERCENT = 100


# ---------------------------------------------------------------------------
# Job handle and outcomes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class JobHandle:
    """Identifies one outstanding segmentation run."""
    model_id: str
    segmentation_id: str


@dataclass(frozen=True)
class InProgress:
    message: str
    progress: int = IN_PROGRESS_PERCENT
    is_terminal: ClassVar[bool] = False


@dataclass(frozen=True)
class Complete:
    result: Dataset
    progress: int = COMPLETE_PERCENT
    is_terminal: ClassVar[bool] = True


@dataclass(frozen=True)
class NotFound:
    handle: JobHandle
    is_terminal: ClassVar[bool] = True


@dataclass(frozen=True)
class TransportFailure:
    status_code: int
    reason: str
    is_terminal: ClassVar[bool] = True


JobOutcome = Union[InProgress, Complete, NotFound, TransportFailure]


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class SegmentationClient:
    """
    Client for the segmentation service.

    The anonymisation protocol is parsed once, here, so a bad protocol
    fails before any network activity.  HTTP resources are acquired by
    open() (or ``async with``) and released by aclose().

    Parameters
    ----------
    base_url : str
        Service root, e.g. ``https://segmentation.example.org``.
    license_key : str
        Sent as the ``API_AUTH_SECRET`` header on every request.
    protocol : AnonymisationProtocol or mapping
        Parsed protocol, or the raw ``{method: [keyword, ...]}`` mapping.
    protocol_id : UUID or str
        Used only when *protocol* is a raw mapping.
    top_level_replacements : iterable of BaseTag
        Tags removed before upload and restored from the first reference.
    timeout_s : float
        Upper bound for every HTTP call, retries included.
    retry : mapping
        ``max_attempts``, ``base_delay``, ``max_delay`` for RetryTransport.
    transport : httpx.AsyncBaseTransport, optional
        Connection handler to use instead of a real network transport.
    """

    def __init__(
        self,
        base_url: str,
        license_key: str,
        protocol: Union[AnonymisationProtocol, Mapping[str, Iterable[str]]],
        protocol_id: Union[uuid.UUID, str] = SEGMENTATION_PROTOCOL_ID,
        top_level_replacements: Iterable[BaseTag] = TOP_LEVEL_REPLACEMENTS,
        timeout_s: float = 600.0,
        retry: Optional[Mapping[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if protocol is None:
            raise MissingArgumentError("protocol")
        if not isinstance(protocol, AnonymisationProtocol):
            protocol = parse_protocol(protocol, protocol_id)

        self.base_url = base_url
        self.protocol = protocol
        self.top_level_replacements = tuple(top_level_replacements)
        self.timeout_s = timeout_s
        self._license_key = license_key
        self._retry = dict(retry or CONFIG["retry"])
        self._transport = transport
        self._engine = AnonymisationEngine(protocol, suppressed_tags=self.top_level_replacements)
        self._resources: Optional[TransportResources] = None

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any] = CONFIG,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "SegmentationClient":
        """Build a client from a loaded configuration (see config.load_config)."""
        service = config["service"]
        top_level = config["anonymisation"].get("top_level_replacements")
        return cls(
            base_url=service["base_url"],
            license_key=service["license_key"],
            protocol=protocol_from_config(config),
            top_level_replacements=(
                DEFAULT_REGISTRY.resolve_all(top_level) if top_level is not None
                else TOP_LEVEL_REPLACEMENTS
            ),
            timeout_s=service["timeout_s"],
            retry=config["retry"],
            transport=transport,
        )

    @property
    def protocol_id(self) -> uuid.UUID:
        return self.protocol.protocol_id

    # -- resource lifetime --------------------------------------------------

    async def open(self) -> "SegmentationClient":
        if self._resources is None or self._resources.closed:
            self._resources = await TransportResources.create(
                base_url=self.base_url,
                headers={AUTH_HEADER_NAME: self._license_key},
                timeout_s=self.timeout_s,
                max_attempts=self._retry["max_attempts"],
                base_delay=self._retry["base_delay"],
                max_delay=self._retry["max_delay"],
                transport=self._transport,
            )
        return self

    async def aclose(self) -> None:
        if self._resources is not None:
            await self._resources.aclose()

    async def __aenter__(self) -> "SegmentationClient":
        return await self.open()

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        if self._resources is None or self._resources.closed:
            raise RuntimeError("SegmentationClient is not open; use 'async with' or open()")
        try:
            return await asyncio.wait_for(
                self._resources.client.request(method, url, **kwargs), self.timeout_s
            )
        except asyncio.TimeoutError as exc:
            raise TransportError(f"{method} {url} timed out after {self.timeout_s}s") from exc
        except httpx.HTTPError as exc:
            raise TransportError(str(exc) or type(exc).__name__) from exc

    # -- anonymisation ------------------------------------------------------

    def _engine_for(self, protocol: Optional[AnonymisationProtocol]) -> AnonymisationEngine:
        if protocol is None:
            return self._engine
        return AnonymisationEngine(protocol, suppressed_tags=self.top_level_replacements)

    def anonymize_dataset(
        self, dataset: Dataset, protocol: Optional[AnonymisationProtocol] = None
    ) -> Dataset:
        """Anonymise one dataset; the service protocol is used unless *protocol* is given."""
        return self._engine_for(protocol).anonymize(dataset)

    def anonymize_datasets(
        self, datasets: Iterable[Dataset], protocol: Optional[AnonymisationProtocol] = None
    ) -> list[Dataset]:
        return self._engine_for(protocol).anonymize_all(datasets)

    def deanonymize_dataset(
        self,
        dataset: Dataset,
        reference_datasets: Iterable[Dataset],
        user_replacements: Iterable[TagReplacement] = (),
        protocol: Optional[AnonymisationProtocol] = None,
    ) -> Dataset:
        return restore_dataset(
            dataset,
            reference_datasets,
            self.top_level_replacements,
            user_replacements,
            protocol or self.protocol,
        ).dataset

    # -- service calls ------------------------------------------------------

    async def ping(self) -> None:
        """
        Check the service is reachable and the license key is accepted.

        Raises
        ------
        InvalidCredentialError
            The service answered 403.
        TransportError
            Any other non-success answer, or no answer at all.
        """
        response = await self._request("GET", "/v1/ping")
        if response.status_code == 403:
            raise InvalidCredentialError(response.status_code)
        if not response.is_success:
            raise TransportError(response.reason_phrase, response.status_code)

    async def start_segmentation(
        self,
        model_id: str,
        channels: Iterable[ChannelData],
    ) -> tuple[JobHandle, list[Dataset]]:
        """
        Anonymise, compress and upload the datasets of every channel.

        Returns
        -------
        handle : JobHandle
            Model id plus the segmentation id issued by the service.
        posted : list[Dataset]
            The anonymised datasets actually sent, flattened across channels.

        Raises
        ------
        MissingArgumentError
            *model_id* or *channels* is None.
        EmptyChannelError
            No channels, or a channel without datasets.
        InvalidRequestError
            The service answered 400.
        ServiceError
            Any other non-success answer.
        """
        if model_id is None:
            raise MissingArgumentError("model_id")
        if channels is None:
            raise MissingArgumentError("channels")

        channels = list(channels)
        empty = [c.channel_id for c in channels if not c.datasets]
        if empty or not channels:
            raise EmptyChannelError(empty)

        anonymised = [
            ChannelData(c.channel_id, self._engine.anonymize_all(c.datasets)) for c in channels
        ]
        payload = compress_channels(anonymised)

        response = await self._request("POST", f"/v1/model/start/{model_id}", content=payload)

        if response.status_code == 400:
            raise InvalidRequestError(response.reason_phrase)
        if not response.is_success:
            raise ServiceError(response.status_code, response.reason_phrase)

        segmentation_id = response.text.strip()
        logger.info("Segmentation uploaded with id=%s for model %s", segmentation_id, model_id)

        posted = [ds for channel in anonymised for ds in channel.datasets]
        return JobHandle(model_id=model_id, segmentation_id=segmentation_id), posted

    async def check_status(self, handle: JobHandle) -> JobOutcome:
        """
        Ask the service for the state of *handle* and return it as an outcome.

        Only a malformed result archive raises (UnsupportedPayloadError);
        404 and other failures come back as NotFound / TransportFailure.
        """
        response = await self._request("GET", f"/v1/model/results/{handle.segmentation_id}")

        if response.status_code == 202:
            return InProgress(message=response.text)
        if response.status_code == 200:
            result = read_single_dataset(response.content)
            logger.info("Segmentation %s complete", handle.segmentation_id)
            return Complete(result=result)
        if response.status_code == 404:
            return NotFound(handle=handle)
        return TransportFailure(status_code=response.status_code, reason=response.reason_phrase)

    async def poll(self, handle: JobHandle) -> Union[InProgress, Complete]:
        """
        Like check_status(), but terminal failures are raised.

        Raises
        ------
        JobNotFoundError
            The service does not know the segmentation id.
        TransportError
            Any other unexpected status.
        UnsupportedPayloadError
            The result archive does not hold exactly one file.
        """
        outcome = await self.check_status(handle)
        if isinstance(outcome, NotFound):
            raise JobNotFoundError(handle.segmentation_id, handle.model_id)
        if isinstance(outcome, TransportFailure):
            raise TransportError(outcome.reason, outcome.status_code)
        return outcome

    async def segmentation_result(
        self,
        handle: JobHandle,
        reference_datasets: Iterable[Dataset],
        user_replacements: Iterable[TagReplacement] = (),
    ) -> Union[InProgress, Complete]:
        """Poll once; a completed result comes back deanonymised against *reference_datasets*."""
        outcome = await self.poll(handle)
        if isinstance(outcome, Complete):
            restored = self.deanonymize_dataset(outcome.result, reference_datasets, user_replacements)
            return Complete(result=restored, progress=outcome.progress)
        return outcome

    async def wait_for_segmentation(
        self,
        handle: JobHandle,
        reference_datasets: Iterable[Dataset],
        user_replacements: Iterable[TagReplacement] = (),
        interval_s: float = 5.0,
        max_polls: Optional[int] = None,
    ) -> Complete:
        """
        Poll until the job completes and return the deanonymised result.

        Raises
        ------
        GatewayError
            Whatever poll() raises.
        PollLimitError
            The job is still running after *max_polls* polls.
        """
        reference_datasets = list(reference_datasets)
        user_replacements = list(user_replacements)
        polls = 0
        while True:
            outcome = await self.segmentation_result(handle, reference_datasets, user_replacements)
            polls += 1
            if isinstance(outcome, Complete):
                return outcome
            logger.info(
                "Segmentation %s in progress (%d%%): %s",
                handle.segmentation_id, outcome.progress, outcome.message,
            )
            if max_polls is not None and polls >= max_polls:
                raise PollLimitError(handle.segmentation_id, polls)
            await asyncio.sleep(interval_s)
