# knowledge_base/vision.py
import base64

from knowledge_base import deepinfra
from knowledge_base.config import settings

OCR_PROMPT = (
    "Extract ALL text content from this image using OCR. Also describe the image contents. "
    "Format your response as:\n\n## OCR Text\n[extracted text]\n\n## Description\n[image description]"
)


def is_available() -> bool:
    return bool(settings.deepinfra_token and settings.vision_model)


def model_name() -> str:
    return settings.vision_model


async def describe_and_transcribe(image_bytes: bytes, mime_type: str = "image/png") -> str:
    data_url = f"data:{mime_type};base64,{base64.b64encode(image_bytes).decode('utf-8')}"
    messages = [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": OCR_PROMPT},
                {"type": "image_url", "image_url": {"url": data_url}},
            ],
        }
    ]
    return await deepinfra.chat_completion(messages, model=settings.vision_model, max_tokens=4096, timeout=120)
