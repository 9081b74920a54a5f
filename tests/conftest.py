import io

import pytest
from PIL import Image

GIBS_CAPABILITIES = """<?xml version="1.0" encoding="UTF-8"?>
<Capabilities xmlns="http://www.opengis.net/wmts/1.0" xmlns:ows="http://www.opengis.net/ows/1.1">
  <Contents>
    <Layer>
      <ows:Title>Corrected Reflectance (True Color, Suomi NPP / VIIRS)</ows:Title>
      <ows:Identifier>VIIRS_SNPP_CorrectedReflectance_TrueColor</ows:Identifier>
      <TileMatrixSetLink>
        <TileMatrixSet>GoogleMapsCompatible_Level8</TileMatrixSet>
      </TileMatrixSetLink>
    </Layer>
  </Contents>
</Capabilities>
"""

TREK_CAPABILITIES = """<?xml version="1.0" encoding="UTF-8"?>
<Capabilities xmlns="http://www.opengis.net/wmts/1.0" xmlns:ows="http://www.opengis.net/ows/1.1">
  <Contents>
    <Layer>
      <ows:Title>Apollo 15 Metric Camera</ows:Title>
      <ows:Identifier>Apollo15_MetricCam_Mosaic</ows:Identifier>
      <Style isDefault="true">
        <ows:Identifier>default</ows:Identifier>
      </Style>
      <TileMatrixSetLink>
        <TileMatrixSet>default028mm</TileMatrixSet>
      </TileMatrixSetLink>
      <ResourceURL format="image/png" resourceType="tile"
        template="https://trek.nasa.gov/tiles/Moon/EQ/Apollo15/1.0.0/{Style}/{TileMatrixSet}/{TileMatrix}/{TileRow}/{TileCol}.png"/>
    </Layer>
    <TileMatrixSet>
      <ows:Identifier>default028mm</ows:Identifier>
      <TileMatrix><ows:Identifier>0</ows:Identifier></TileMatrix>
      <TileMatrix><ows:Identifier>1</ows:Identifier></TileMatrix>
      <TileMatrix><ows:Identifier>2</ows:Identifier></TileMatrix>
      <TileMatrix><ows:Identifier>7</ows:Identifier></TileMatrix>
    </TileMatrixSet>
  </Contents>
</Capabilities>
"""


def make_png(color=(120, 200, 150), size: int = 256, mode: str = "RGB") -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, (size, size), color=color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def bright_png() -> bytes:
    return make_png()


@pytest.fixture
def dark_png() -> bytes:
    return make_png(color=(2, 2, 2))


@pytest.fixture
def gibs_capabilities() -> str:
    return GIBS_CAPABILITIES


@pytest.fixture
def trek_capabilities() -> str:
    return TREK_CAPABILITIES


@pytest.fixture
def png_factory():
    return make_png
