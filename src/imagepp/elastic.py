from elasticsearch import Elasticsearch

from .defines import Settings


def make_elastic_client() -> Elasticsearch | None:
    if not Settings.ELASTIC_HOST and not Settings.ELASTIC_CLOUD_ID:
        return None

    return Elasticsearch(
        hosts=Settings.ELASTIC_HOST,
        cloud_id=Settings.ELASTIC_CLOUD_ID,
        api_key=Settings.ELASTIC_API_KEY,
        headers={"Authorization": Settings.ELASTIC_AUTH_HEADER}
        if Settings.ELASTIC_AUTH_HEADER is not None
        else None,
    )


def job_index_name(timestamp) -> str:
    worker = Settings.WORKER_NAME.strip().replace(" ", "_").lower()
    return (
        f"{'dev_' if Settings.DEV else ''}"
        + f"imagepp_jobs_{worker}"
        + f"_{timestamp.strftime('%Y%m%d')}"
    )
