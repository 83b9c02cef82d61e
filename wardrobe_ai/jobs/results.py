"""Pull the fields a flow needs out of a succeeded job's result payload."""

from typing import Any, Dict, Optional

from wardrobe_ai.jobs.models import Job, JobType

# Workers have written the generated image under each of these keys.
IMAGE_ID_KEYS = ("image_id", "generated_image_id", "output_image_id")
WARDROBE_SUGGESTION_KEYS = ("title", "description", "attributes", "category_id", "subcategory_id")


def result_image_id(job: Job) -> Optional[str]:
    result = job.result or {}
    for key in IMAGE_ID_KEYS:
        value = result.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def extract_result(job: Job) -> Dict[str, Any]:
    result = job.result or {}
    extracted: Dict[str, Any] = {"image_id": result_image_id(job)}
    if job.job_type == JobType.WARDROBE_ITEM_GENERATE:
        extracted.update({k: result[k] for k in WARDROBE_SUGGESTION_KEYS if k in result})
    elif job.job_type == JobType.OUTFIT_MANNEQUIN:
        extracted["mannequin_image_id"] = result.get("mannequin_image_id")
    elif job.job_type == JobType.OUTFIT_RENDER and "outfit_id" in job.input:
        extracted["outfit_id"] = job.input["outfit_id"]
    return extracted
