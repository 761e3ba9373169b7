#!/usr/bin/env python3
"""
Civil Registry Form Filling Pipeline - Main Entry Point

This module orchestrates document generation for civil registry requests:
normalize the extracted data, fill the request's template, verify the result
(regenerating it when verification finds mismatches) and store the output.
It also exposes the individual steps as command-line sub-commands.
"""

import os
import sys
import time
import json
import argparse
import traceback
from pathlib import Path
from typing import Dict, List, Any, Optional
from loguru import logger

from registry_filler.config import load_config, get_default_config
from registry_filler.storage import LocalDocumentStore
from registry_filler.normalize_fields import normalize_extracted_data
from registry_filler.field_mapping import analyze_template_mappings
from registry_filler.fill_registry_form import RegistryFormFiller, list_template_fields
from registry_filler.verify_document import verify_document, auto_correct
from registry_filler.utils import (
    setup_logging, ensure_directory_exists, load_json_safely, save_json_safely,
    validate_extracted_data, get_request_directories
)


DATA_FILE = "extracted_data.json"
TEMPLATE_FILE = "template.pdf"
MAPPINGS_FILE = "mappings.json"
GENERATED_FILE = "filled_document.pdf"

PIPELINE_VERSION = "1.0.0"


class RegistryProcessingPipeline:
    """Main pipeline orchestrator for registry document generation."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize the processing pipeline.

        Args:
            config: Configuration dictionary. If None, uses default settings.
        """
        self.config = get_default_config()
        self.config.update(config or {})
        self.logger = setup_logging(
            self.config.get('log_file'),
            self.config.get('log_level', 'INFO'),
            rotation=self.config.get('log_rotation') or '10 MB',
            retention=self.config.get('log_retention')
        )
        self.filler = RegistryFormFiller(font_size=self.config.get('font_size', 10))

        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'processing_start_time': None,
            'processing_end_time': None
        }

    def generate_document(self, template_bytes: bytes, raw_data: Dict[str, Any],
                          overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Normalize, fill and verify one document.

        Returns:
            Fill result including "normalized_data", "validation" and, when
            enabled, "verification" entries

        Raises:
            ValueError: when there is no extracted data
            RuntimeError: when the template cannot be filled
        """
        if not raw_data:
            raise ValueError("No extracted data found for this request (empty object)")

        normalized = normalize_extracted_data(raw_data)
        validation = validate_extracted_data(normalized)
        if not validation["is_valid"]:
            self.logger.warning(f"Data validation issues: {validation['errors']}")

        fill_result = self.filler.fill_registry_form(template_bytes, normalized, overrides)
        if fill_result["status"] != "completed":
            raise RuntimeError(f"Document generation failed: {fill_result['error_message']}")

        if self.config.get('verify_after_fill', True):
            verification = verify_document(fill_result["pdf_bytes"], normalized)
            fill_result["verification"] = verification.get("verification")
            fill_result["attempts"] = 0

            report = fill_result["verification"]
            if report and report["mismatches"] > 0 and self.config.get('auto_correct', True):
                self.logger.warning(f"{report['mismatches']} mismatches found, regenerating document")
                corrected = auto_correct(
                    template_bytes, normalized, overrides,
                    font_size=self.config.get('font_size', 10),
                    max_attempts=self.config.get('max_correction_attempts', 1)
                )
                if corrected["status"] == "completed":
                    fill_result = corrected

        fill_result["normalized_data"] = normalized
        fill_result["validation"] = validation
        return fill_result

    def process_single_request(self, request_dir: str, output_dir: str) -> Dict[str, Any]:
        """
        Process one request directory.

        Args:
            request_dir: Directory holding the extracted data, the template and
                optional mapping overrides
            output_dir: Path to output directory

        Returns:
            Processing results dictionary
        """
        request_id = Path(request_dir).name
        with logger.contextualize(request_id=request_id):
            return self._process_request(request_dir, output_dir, request_id)

    def _process_request(self, request_dir: str, output_dir: str, request_id: str) -> Dict[str, Any]:
        start_time = time.time()

        self.logger.info(f"Processing request: {request_id}")

        result = {
            'request_id': request_id,
            'success': False,
            'processing_time': 0.0,
            'filled_count': 0,
            'verification': None,
            'stored_document': None,
            'reports_generated': [],
            'errors': []
        }

        request_output_dir = os.path.join(output_dir, request_id)
        store = LocalDocumentStore({**self.config, 'storage_root': output_dir})

        try:
            raw_data = load_json_safely(os.path.join(request_dir, DATA_FILE))
            if raw_data is None:
                raise ValueError(f"Extracted data could not be loaded from {DATA_FILE}")

            template_bytes = store.fetch_template(os.path.join(request_dir, TEMPLATE_FILE))
            overrides = store.load_mapping_overrides(os.path.join(request_dir, MAPPINGS_FILE))

            generation = self.generate_document(template_bytes, raw_data, overrides)
            result['filled_count'] = generation['filled_count']
            result['verification'] = generation.get('verification')
            result['validation'] = generation['validation']
            result['attempts'] = generation.get('attempts', 0)

            result['stored_document'] = store.store_generated(
                request_id, generation['pdf_bytes'], GENERATED_FILE
            )
            result['reports_generated'].append(GENERATED_FILE)

            if generation.get('verification') is not None:
                if save_json_safely(generation['verification'],
                                    os.path.join(request_output_dir, "verification_report.json")):
                    result['reports_generated'].append("verification_report.json")

            if self.config.get('save_intermediate_files', True):
                if save_json_safely(generation['normalized_data'],
                                    os.path.join(request_output_dir, "normalized_data.json")):
                    result['reports_generated'].append("normalized_data.json")
                if save_json_safely(generation['field_mapping_log'],
                                    os.path.join(request_output_dir, "field_mapping_log.json")):
                    result['reports_generated'].append("field_mapping_log.json")

            result['success'] = True
            self.logger.success(f"Successfully processed request: {request_id} "
                                f"({generation['filled_count']} fields filled)")

        except Exception as e:
            error_msg = f"Failed to process request {request_id}: {str(e)}"
            self.logger.error(error_msg)
            result['errors'].append(error_msg)

            error_log_path = os.path.join(request_output_dir, "error_log.txt")
            ensure_directory_exists(request_output_dir)
            with open(error_log_path, 'w', encoding='utf-8') as f:
                f.write(f"Processing Error for {request_id}\n")
                f.write(f"Timestamp: {time.strftime('%Y-%m-%d %H:%M:%S')}\n")
                f.write(f"Error: {str(e)}\n")
                f.write(f"Traceback:\n{traceback.format_exc()}\n")

        finally:
            result['processing_time'] = time.time() - start_time

        save_json_safely(result, os.path.join(request_output_dir, "processing_summary.json"))
        return result

    def process_batch(self, input_dir: str, output_dir: str) -> Dict[str, Any]:
        """
        Process all requests in an input directory.

        Args:
            input_dir: Directory containing one folder per request
            output_dir: Output directory for processed results

        Returns:
            Batch processing summary
        """
        self.stats['processing_start_time'] = time.time()
        self.logger.info(f"Starting batch processing: {input_dir}")

        request_dirs = get_request_directories(input_dir, DATA_FILE, TEMPLATE_FILE)
        self.stats['total_requests'] = len(request_dirs)

        if not request_dirs:
            self.logger.warning(f"No request directories found in: {input_dir}")
            self.stats['processing_end_time'] = time.time()
            return self._create_batch_summary([])

        self.logger.info(f"Found {len(request_dirs)} requests to process")

        request_results = []
        for request_dir in request_dirs:
            result = self.process_single_request(request_dir, output_dir)
            request_results.append(result)

            if result['success']:
                self.stats['successful_requests'] += 1
            else:
                self.stats['failed_requests'] += 1

        self.stats['processing_end_time'] = time.time()

        batch_summary = self._create_batch_summary(request_results)
        if save_json_safely(batch_summary, os.path.join(output_dir, "batch_summary.json")):
            self.logger.info(f"Batch summary saved to: {os.path.join(output_dir, 'batch_summary.json')}")

        self.logger.success(
            f"Batch processing complete: {self.stats['successful_requests']}/{self.stats['total_requests']} successful"
        )

        return batch_summary

    def _create_batch_summary(self, request_results: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Create batch processing summary."""
        total_time = 0
        if self.stats['processing_start_time'] and self.stats['processing_end_time']:
            total_time = self.stats['processing_end_time'] - self.stats['processing_start_time']

        return {
            'batch_metadata': {
                'timestamp': time.strftime('%Y-%m-%d %H:%M:%S'),
                'total_processing_time': total_time,
                'pipeline_version': PIPELINE_VERSION
            },
            'statistics': {
                'total_requests': self.stats['total_requests'],
                'successful_requests': self.stats['successful_requests'],
                'failed_requests': self.stats['failed_requests'],
                'success_rate': (self.stats['successful_requests'] / max(1, self.stats['total_requests'])) * 100
            },
            'request_results': request_results,
            'configuration': self.config
        }


def _read_bytes(path: str) -> bytes:
    with open(path, 'rb') as f:
        return f.read()


def _load_required_json(path: str) -> Dict[str, Any]:
    data = load_json_safely(path)
    if data is None:
        raise ValueError(f"Could not load JSON from {path}")
    return data


def _emit(data: Any, output_path: Optional[str]) -> None:
    if output_path:
        save_json_safely(data, output_path)
        print(f"📄 Written: {output_path}")
    else:
        print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def run_generate(args, pipeline: RegistryProcessingPipeline) -> int:
    raw_data = _load_required_json(args.data)
    overrides = _load_required_json(args.mappings) if args.mappings else None
    generation = pipeline.generate_document(_read_bytes(args.template), raw_data, overrides)

    ensure_directory_exists(os.path.dirname(args.output) or ".")
    with open(args.output, 'wb') as f:
        f.write(generation['pdf_bytes'])

    print(f"✅ Filled {generation['filled_count']}/{generation['total_fields']} fields -> {args.output}")
    report = generation.get('verification')
    if report:
        print(f"🔎 Verification: {report['matches']} matches, {report['mismatches']} mismatches, "
              f"{report['unmapped']} unmapped")
    return 0


def run_verify(args, pipeline: RegistryProcessingPipeline) -> int:
    normalized = normalize_extracted_data(_load_required_json(args.data))
    result = verify_document(_read_bytes(args.pdf), normalized)
    if result['status'] != 'completed':
        print(f"❌ {result['error_message']}")
        return 1
    _emit(result['verification'], args.output)
    return 0


def run_inspect(args, pipeline: RegistryProcessingPipeline) -> int:
    fields = list_template_fields(_read_bytes(args.template))
    overrides = _load_required_json(args.mappings) if args.mappings else None
    analysis = analyze_template_mappings([f['name'] for f in fields], overrides)
    analysis['fields'] = fields
    _emit(analysis, args.output)
    return 0


def run_normalize(args, pipeline: RegistryProcessingPipeline) -> int:
    normalized = normalize_extracted_data(_load_required_json(args.data))
    _emit({
        'normalized_data': normalized,
        'validation': validate_extracted_data(normalized)
    }, args.output)
    return 0


def run_batch(args, pipeline: RegistryProcessingPipeline) -> int:
    ensure_directory_exists(args.output)

    if args.request:
        if not os.path.exists(args.request):
            logger.error(f"Request directory not found: {args.request}")
            return 1

        result = pipeline.process_single_request(args.request, args.output)
        if result['success']:
            print(f"✅ Success: {result['request_id']}")
            print(f"⏱️  Processing time: {result['processing_time']:.1f}s")
            if result['reports_generated']:
                print(f"📄 Outputs: {', '.join(result['reports_generated'])}")
            return 0

        print(f"❌ Failed: {result['request_id']}")
        if result['errors']:
            print(f"🚨 Errors: {'; '.join(result['errors'])}")
        return 1

    if not os.path.exists(args.input):
        logger.error(f"Input directory not found: {args.input}")
        return 1

    summary = pipeline.process_batch(args.input, args.output)
    stats = summary['statistics']
    print(f"\n📊 Batch Processing Complete")
    print(f"✅ Successful: {stats['successful_requests']}/{stats['total_requests']} requests")
    print(f"📈 Success Rate: {stats['success_rate']:.1f}%")
    print(f"⏱️  Total Time: {summary['batch_metadata']['total_processing_time']:.1f}s")

    if stats['failed_requests'] > 0:
        print(f"❌ Failed: {stats['failed_requests']} requests")
        print("📋 Check individual error logs for details")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="registry-filler",
        description="Civil Registry Form Filling Pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Fill a template from extracted data
  registry-filler generate --data extracted.json --template template.pdf --output filled.pdf

  # Check a generated document against its data
  registry-filler verify --data extracted.json --pdf filled.pdf

  # Show a template's fields and how they map
  registry-filler inspect --template template.pdf

  # Process every request folder in a directory
  registry-filler batch --input requests --output output
        """
    )

    parser.add_argument('-c', '--config', type=str, help='Path to configuration JSON file')
    parser.add_argument('-l', '--log-file', type=str, help='Path to log file')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')

    subparsers = parser.add_subparsers(dest='command', required=True)

    generate = subparsers.add_parser('generate', help='Fill a template with extracted data')
    generate.add_argument('-d', '--data', required=True, help='Extracted data JSON')
    generate.add_argument('-t', '--template', required=True, help='Template PDF')
    generate.add_argument('-m', '--mappings', help='Mapping overrides JSON')
    generate.add_argument('-o', '--output', required=True, help='Filled PDF path')
    generate.set_defaults(handler=run_generate)

    verify = subparsers.add_parser('verify', help='Verify a generated document')
    verify.add_argument('-d', '--data', required=True, help='Extracted data JSON')
    verify.add_argument('-p', '--pdf', required=True, help='Generated PDF')
    verify.add_argument('-o', '--output', help='Report JSON path (prints when omitted)')
    verify.set_defaults(handler=run_verify)

    inspect = subparsers.add_parser('inspect', help='List template fields and mappings')
    inspect.add_argument('-t', '--template', required=True, help='Template PDF')
    inspect.add_argument('-m', '--mappings', help='Mapping overrides JSON')
    inspect.add_argument('-o', '--output', help='Report JSON path (prints when omitted)')
    inspect.set_defaults(handler=run_inspect)

    normalize = subparsers.add_parser('normalize', help='Normalize extracted data')
    normalize.add_argument('-d', '--data', required=True, help='Extracted data JSON')
    normalize.add_argument('-o', '--output', help='Output JSON path (prints when omitted)')
    normalize.set_defaults(handler=run_normalize)

    batch = subparsers.add_parser('batch', help='Process request directories')
    source = batch.add_mutually_exclusive_group(required=True)
    source.add_argument('-i', '--input', help='Directory containing request folders')
    source.add_argument('-r', '--request', help='Process a single request directory')
    batch.add_argument('-o', '--output', required=True, help='Output directory')
    batch.set_defaults(handler=run_batch)

    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point for command-line execution."""
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)
    if args.log_file:
        config['log_file'] = args.log_file
    if args.verbose:
        config['log_level'] = 'DEBUG'

    pipeline = RegistryProcessingPipeline(config)

    try:
        exit_code = args.handler(args, pipeline)
    except KeyboardInterrupt:
        logger.warning("Processing interrupted by user")
        print("\n⚠️  Processing interrupted")
        sys.exit(130)
    except Exception as e:
        logger.error(f"Pipeline execution failed: {e}")
        print(f"💥 Pipeline failed: {e}")
        sys.exit(1)

    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
