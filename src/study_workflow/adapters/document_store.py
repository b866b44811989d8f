"""Report/document store client - adapter for dispatching reports and packaging zips."""

import abc
import logging
from typing import Any, Dict, Optional
import requests

import config
from study_workflow.domain.exceptions import DocumentStoreError, ExternalCollaboratorTimeout

logger = logging.getLogger(__name__)


class AbstractDocumentStore(abc.ABC):
    """
    The engine only decides which studies qualify; the document store owns
    the report bytes and does the actual sending and packaging.
    """

    @abc.abstractmethod
    def dispatch_report(self, study_id: str) -> Dict[str, Any]:
        """
        Send the finalized report of a study to its originating lab.

        Raises:
            ExternalCollaboratorTimeout: If the store does not answer in time
            DocumentStoreError: For any other failure
        """
        raise NotImplementedError

    @abc.abstractmethod
    def add_to_zip(self, archive_id: str, study_id: str) -> Dict[str, Any]:
        """
        Add a study's documents to the zip archive ``archive_id``.

        Raises:
            ExternalCollaboratorTimeout: If the store does not answer in time
            DocumentStoreError: For any other failure
        """
        raise NotImplementedError


class HTTPDocumentStore(AbstractDocumentStore):
    """HTTP-based client for the document store service."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        """
        Initialize document store client.

        Args:
            base_url: Base URL of the document store. If None, uses config.
            timeout: Request timeout in seconds. If None, uses config.
        """
        self.base_url = base_url or config.get_document_store_url()
        self.timeout = timeout if timeout is not None else config.get_collaborator_timeout_seconds()

    def dispatch_report(self, study_id: str) -> Dict[str, Any]:
        url = f"{self.base_url}/api/v1/reports/{study_id}/dispatch"
        return self._post(url, study_id)

    def add_to_zip(self, archive_id: str, study_id: str) -> Dict[str, Any]:
        url = f"{self.base_url}/api/v1/archives/{archive_id}/studies/{study_id}"
        return self._post(url, study_id)

    def _post(self, url: str, study_id: str) -> Dict[str, Any]:
        logger.info(f"Calling document store {url}")

        try:
            response = requests.post(url, timeout=self.timeout)
            response.raise_for_status()
            return response.json() if response.content else {}

        except requests.exceptions.Timeout as e:
            logger.warning(f"Document store timed out for study {study_id}: {e}")
            raise ExternalCollaboratorTimeout(
                f"Document store did not answer within {self.timeout}s"
            ) from e

        except requests.exceptions.HTTPError as e:
            logger.error(f"HTTP error from document store for study {study_id}: {e}")
            raise DocumentStoreError(f"Document store rejected request: {e}") from e

        except requests.exceptions.RequestException as e:
            logger.error(f"Network error calling document store for study {study_id}: {e}")
            raise DocumentStoreError(f"Network error: {e}") from e
