from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_REQUIRED_FIELDS = (
    'test,ad_copy,age_text,age1,condition,signature1,signature2,style,valuation_method,'
    'conclusion1,conclusion2,authorship,table,justification_html,glossary,value,'
    'top_auction_results,statistics_summary_text,googlevision,'
    'Introduction,ImageAnalysisText,SignatureText,AppraiserText,LiabilityText,SellingGuideText'
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=False,
        extra='ignore',
        populate_by_name=True,
    )

    app_name: str = 'docbuilder report pipeline'

    data_dir: Path = Field(default=Path('./data'))

    # 'local' runs against the in-process document service, 'google' against Docs/Drive.
    backend: str = 'local'

    # Google Docs / Drive
    google_access_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices('GOOGLE_ACCESS_TOKEN', 'GOOGLE_OAUTH_TOKEN'),
    )
    google_docs_base_url: str = 'https://docs.googleapis.com/v1'
    google_drive_base_url: str = 'https://www.googleapis.com/drive/v3'
    google_drive_upload_url: str = 'https://www.googleapis.com/upload/drive/v3'
    google_timeout_seconds: int = 60

    # Templates and destination folder
    template_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices('TEMPLATE_ID', 'GOOGLE_DOCS_TEMPLATE_ID'),
    )
    # JSON object mapping report type -> template id, e.g. {"TaxArt": "..."}
    template_overrides: dict[str, str] = Field(default_factory=dict)
    drive_folder_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices('DRIVE_FOLDER_ID', 'GOOGLE_DRIVE_FOLDER_ID'),
    )

    # WordPress content source
    wordpress_base_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices('WORDPRESS_BASE_URL', 'WORDPRESS_API_URL'),
    )
    wordpress_username: str | None = Field(
        default=None,
        validation_alias=AliasChoices('WORDPRESS_USERNAME', 'WP_USERNAME'),
    )
    wordpress_app_password: str | None = Field(
        default=None,
        validation_alias=AliasChoices('WORDPRESS_APP_PASSWORD', 'WP_APP_PASSWORD'),
    )
    wordpress_post_type: str = 'appraisals'
    wordpress_timeout_seconds: int = 30

    # Pipeline behavior
    step_timeout_seconds: float = 180.0
    error_anchor_offset: int = 1
    required_fields: str = DEFAULT_REQUIRED_FIELDS
    container_placeholders: str = 'appraisal_card,statistics_section'
    batch_concurrency: int = 3

    # Images
    image_fetch_timeout_seconds: int = 20
    image_fetch_concurrency: int = 4
    image_max_bytes: int = 15 * 1024 * 1024
    image_max_width: int = 200
    image_max_height: int = 150
    specific_image_width: float = 400.0
    specific_image_height: float = 300.0

    # Gallery
    gallery_grid_width: int = 3
    gallery_max_batch_images: int = 10
    gallery_title: str = 'Similar Artworks'
    gallery_image_width: float = 150.0
    gallery_image_height: float = 150.0

    # Local PDF export
    pdf_font_name: str = 'Helvetica'
    pdf_title_font_size: int = 15
    pdf_body_font_size: int = 10
    pdf_page_margin: int = 48

    def required_field_names(self) -> list[str]:
        return _split_csv(self.required_fields)

    def container_keys(self) -> list[str]:
        return _split_csv(self.container_placeholders)

    @property
    def templates_dir(self) -> Path:
        return self.data_dir / 'templates'

    @property
    def content_dir(self) -> Path:
        return self.data_dir / 'content'

    @property
    def uploads_dir(self) -> Path:
        return self.data_dir / 'uploads'


def _split_csv(raw: str) -> list[str]:
    items: list[str] = []
    for item in str(raw or '').split(','):
        normalized = item.strip()
        if not normalized:
            continue
        items.append(normalized)
    return items


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    (settings.data_dir / 'runs').mkdir(parents=True, exist_ok=True)
    return settings
